#!/usr/bin/env python
# run_backend.py
"""
Gateway Launcher
================

Run this script to start the gateway server.

Usage:
    python run_backend.py              # Default: 127.0.0.1:9002
    python run_backend.py --port 9100  # Custom port
    python run_backend.py --host 0.0.0.0  # Allow external access

The server provides:
- Client websocket at ws://localhost:9002/
- Health at http://localhost:9002/health
- API documentation at http://localhost:9002/docs
"""

import argparse

import uvicorn

from config.settings import LOG_LEVEL, load_settings
from core.logging.logger import setup_logger


def main():
    settings = load_settings()

    parser = argparse.ArgumentParser(description="Start the trading gateway server")
    parser.add_argument("--host", default=settings.host, help=f"Host to bind to (default: {settings.host})")
    parser.add_argument("--port", type=int, default=settings.port, help=f"Port to bind to (default: {settings.port})")
    parser.add_argument("--log-level", default=LOG_LEVEL.lower(), choices=["debug", "info", "warning", "error"])

    args = parser.parse_args()

    for name in ("core", "backend"):
        setup_logger(name, level=args.log_level, log_dir=settings.log_dir)

    print(f"Gateway listening on ws://{args.host}:{args.port}/")

    # uvicorn exits with status 1 if the port cannot be bound
    uvicorn.run(
        "backend.main:app",
        host=args.host,
        port=args.port,
        workers=1,  # all clients must share one registry
        log_level=args.log_level,
        access_log=False
    )


if __name__ == "__main__":
    main()
