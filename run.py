#!/usr/bin/env python3
"""
Gold Loan System Entry Point

Starts the FastAPI server with the gold loan core.
"""

import sys

from goldloan.api import run_server
from goldloan.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Gold Loan System...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=False  # Set to True for development
        )
    except KeyboardInterrupt:
        print("\nShutting down Gold Loan System...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
