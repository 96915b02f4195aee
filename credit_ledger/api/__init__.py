"""
Credit Ledger API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import get_config
from ..errors import (
    ConflictError, LedgerError, NotFoundError, PersistenceError, PreconditionViolation,
    ValidationError
)
from ..logging_config import get_logger, log_action, setup_logging
from .collateral import router as collateral_router
from .facilities import router as facilities_router
from .loans import router as loans_router
from .snapshots import router as snapshots_router
from .system import LedgerSystem


ERROR_STATUS = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (PreconditionViolation, 409),
    (ConflictError, 409),
    (PersistenceError, 500),
]


def status_for(exc: LedgerError) -> int:
    for error_cls, status_code in ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status_code
    return 500


def create_app(system: Optional[LedgerSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Credit Ledger API",
        description="Loan ledger and lifecycle engine for bank credit facilities",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or LedgerSystem()
    logger = get_logger("credit_ledger.api")

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status_code = status_for(exc)
        if status_code >= 500:
            log_action(logger, "error", exc.message, action="request_failed",
                       resource=request.url.path)
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = ValidationError("Invalid request", {"errors": jsonable_encoder(exc.errors())})
        return JSONResponse(status_code=400, content={"error": error.to_dict()})

    # Include routers
    app.include_router(facilities_router, tags=["Facilities"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(collateral_router, prefix="/collateral", tags=["Collateral"])
    app.include_router(snapshots_router, tags=["Snapshots"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "credit_ledger_api",
            "version": "1.0.0"
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Credit Ledger API",
            "version": "1.0.0",
            "description": "Loan ledger and lifecycle engine",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "banks": "/banks",
                "facilities": "/facilities",
                "credit-lines": "/credit-lines",
                "loans": "/loans",
                "collateral": "/collateral",
                "snapshots": "/snapshots",
                "audit": "/audit/verify",
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "credit_ledger.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
