#!/usr/bin/env python3
"""
Funds Ledger Entry Point

Starts the FastAPI server with the transfer and loan servicing API.
"""

import sys

from funds_ledger.api import run_server
from funds_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Funds Ledger...")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Funds Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
