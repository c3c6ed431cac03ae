#!/usr/bin/env python3
"""
Serve the command gateway API with uvicorn.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import uvicorn

from gateway.core.config import debug_enabled


def main():
    parser = argparse.ArgumentParser(description="Run the command gateway API")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: %(default)s)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: %(default)s)")
    args = parser.parse_args()

    uvicorn.run("gateway.api.main:app", host=args.host, port=args.port, reload=debug_enabled())
    return 0


if __name__ == "__main__":
    sys.exit(main())
