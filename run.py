#!/usr/bin/env python3
"""
Installment Financing Entry Point

Starts the FastAPI server with the financing core. Host, port and storage
come from FINANCING_* environment variables.
"""

import sys

from core_financing.api import run_server
from core_financing.config import get_config


if __name__ == "__main__":
    settings = get_config()
    print("Starting Installment Financing API...")
    print(f"Storage: {settings.database_url}")
    print(f"API available at: http://localhost:{settings.api_port}")
    print(f"Documentation at: http://localhost:{settings.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Installment Financing API...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
