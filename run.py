#!/usr/bin/env python3
"""
Minibank Entry Point

Starts the FastAPI server with the configured host and port.
"""

import sys

from minibank.api import run_server
from minibank.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Minibank ledger service...")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Minibank...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
