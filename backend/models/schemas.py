# backend/models/schemas.py
"""
Pydantic Models for API Responses
=================================

Defines the data models returned by the HTTP endpoints.
The websocket message envelopes live in core.gateway.protocol.
"""

from pydantic import BaseModel
from typing import Dict


class HealthStatus(BaseModel):
    """Gateway health"""
    status: str
    running: bool
    connections: int
    instruments: int
    token_cached: bool
    loops: Dict[str, bool]


class InstrumentRefreshResponse(BaseModel):
    """Result of reloading the order book instrument list"""
    instruments: int
    success: bool = True
