# backend/routers/instruments.py
"""
Instrument Router
=================

Refresh hook for the order book instrument list.
"""

import logging

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from backend.models.schemas import InstrumentRefreshResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/refresh", response_model=InstrumentRefreshResponse)
async def refresh_instruments(request: Request):
    """Reload the instruments polled by the order book loop"""
    service = request.app.state.gateway
    count = await run_in_threadpool(service.refresh_instruments)
    return InstrumentRefreshResponse(instruments=count)
