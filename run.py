#!/usr/bin/env python3
"""
Credit Ledger Entry Point

Starts the FastAPI server with the loan ledger engine.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from credit_ledger.api import run_server
from credit_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Credit Ledger...")
    print(f"Storage: {config.database_url}")
    print("Audit trail active" if config.enable_audit_logging else "Audit trail disabled")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Credit Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
