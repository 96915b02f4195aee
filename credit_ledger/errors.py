"""
Error Kinds Module

Every failure raised by the engine is a LedgerError subclass. Messages name the
precondition that failed so callers can show them to the user unchanged.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for engine errors"""

    code = "ledger_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {"code": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(LedgerError, ValueError):
    """Malformed or out-of-range input, rejected before any write"""

    code = "validation_error"


class PreconditionViolation(LedgerError):
    """Input is valid but the entity is in the wrong state"""

    code = "precondition_violation"


class ConflictError(LedgerError):
    """Idempotency collision or lock contention; the caller may retry"""

    code = "conflict"


class UniqueViolation(ConflictError):
    """A uniqueness constraint rejected a write"""

    code = "unique_violation"

    def __init__(self, table: str, constraint: str, key: str, owner_id: Optional[str] = None):
        super().__init__(
            f"Unique constraint {constraint} on {table} already holds key {key}",
            {"table": table, "constraint": constraint, "key": key, "owner_id": owner_id}
        )
        self.table = table
        self.constraint = constraint
        self.key = key
        self.owner_id = owner_id


class NotFoundError(LedgerError):
    """Referenced entity does not exist or is not visible"""

    code = "not_found"


class PersistenceError(LedgerError):
    """The atomic write unit failed and was rolled back"""

    code = "persistence_error"


def parse_enum(enum_cls, value, field_name: str):
    """Convert a raw value to an enum member, rejecting unknown values as ValidationError"""
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"{field_name} must be one of {choices}, got {value!r}")
