# backend/__init__.py
"""
FastAPI Backend for the Trading Gateway
=======================================

Provides the client websocket and operational HTTP endpoints:
- Websocket channel for trading commands and pushed market/account updates
- Health check
- Instrument list refresh

Run with: python run_backend.py
"""

__version__ = "1.0.0"
