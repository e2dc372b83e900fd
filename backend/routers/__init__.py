# backend/routers/__init__.py
"""API Routers"""

from .instruments import router as instruments_router
from .websocket import router as websocket_router

__all__ = [
    'instruments_router',
    'websocket_router'
]
