# backend/main.py
"""
FastAPI Main Application
========================

Entry point for the gateway server.
Serves the client websocket and a small HTTP surface for operations.

Run with:
    uvicorn backend.main:app --port 9002

Or use run_backend.py for production.
"""

from contextlib import asynccontextmanager
from typing import Optional
import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from backend.models.schemas import HealthStatus
from backend.routers import instruments_router, websocket_router
from core.gateway.service import GatewayService

logger = logging.getLogger(__name__)


def create_app(service: Optional[GatewayService] = None) -> FastAPI:
    """
    Build the FastAPI application around a gateway service.

    Args:
        service: Prebuilt service (tests inject one with a stub upstream).
            Built from environment settings when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.
        Starts the polling loops on startup, stops and joins them on shutdown.
        """
        gateway = app.state.gateway
        logger.info("Starting gateway backend...")
        await run_in_threadpool(gateway.start)
        logger.info("Gateway backend started successfully")

        yield  # Application runs here

        logger.info("Shutting down gateway backend...")
        await run_in_threadpool(gateway.stop)
        logger.info("Gateway backend shutdown complete")

    app = FastAPI(
        title="Trading Gateway",
        description="""
        Websocket gateway to the venue REST API.

        ## Channel
        Connect to `ws://<host>:<port>/` and send JSON messages with a `type`
        field. Order book, position and open order updates are pushed to every
        connected client.
        """,
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.gateway = service or GatewayService()

    # CORS middleware - allow the browser trading UI during development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",       # React dev server
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request timing middleware
    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        """Add X-Process-Time header to all responses"""
        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Process-Time"] = str(time.time() - start_time)
        return response

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle all unhandled exceptions"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": str(exc),
                "detail": "An internal server error occurred"
            }
        )

    app.include_router(
        instruments_router,
        prefix="/api/instruments",
        tags=["Instruments"]
    )
    app.include_router(websocket_router, tags=["WebSocket"])

    @app.get("/health", response_model=HealthStatus, tags=["System"])
    async def health_check():
        """
        Health check endpoint.
        Reports connections, instruments, token state and loop liveness.
        """
        status = app.state.gateway.status()
        healthy = status["running"] and all(status["loops"].values())
        return HealthStatus(status="healthy" if healthy else "degraded", **status)

    return app


app = create_app()
