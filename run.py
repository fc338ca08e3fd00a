#!/usr/bin/env python3
"""
Lending Core Entry Point

Starts the FastAPI server on port 8090 with the lending core.
"""

import sys

from lending_core.api import run_server


if __name__ == "__main__":
    print("Starting Lending Core...")
    print("API available at: http://localhost:8090")
    print("Documentation at: http://localhost:8090/docs")
    print()

    try:
        run_server(
            host="0.0.0.0",
            port=8090,
            debug=False
        )
    except KeyboardInterrupt:
        print("\nShutting down Lending Core...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
