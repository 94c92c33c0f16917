"""FastAPI application entry point for the RiskGuard scoring API."""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from riskguard.api.routes.alerts import alerts_router
from riskguard.api.routes.companies import companies_router
from riskguard.api.routes.documents import documents_router
from riskguard.api.routes.metrics import metrics_router
from riskguard.api.routes.risk import risk_router
from riskguard.api.routes.rules import rules_router
from riskguard.api.routes.scores import scores_router
from riskguard.api.websocket import manager
from riskguard.config import settings
from riskguard.models.database import create_tables
from riskguard.pipeline.ingestion import RiskScoringPipeline

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown tasks.

    Creates database tables and the process-wide scoring pipeline on startup.

    Args:
        app: The FastAPI application instance.
    """
    await create_tables()
    app.state.pipeline = RiskScoringPipeline.from_settings(
        settings, broadcast_callback=manager.broadcast,
    )
    logger.info("%s started. Database tables ready.", settings.APP_TITLE)
    yield


app = FastAPI(
    title=settings.APP_TITLE,
    description="Risk and fraud scoring engine with real-time alert streaming",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include route modules
app.include_router(documents_router)
app.include_router(companies_router)
app.include_router(scores_router)
app.include_router(metrics_router)
app.include_router(risk_router)
app.include_router(alerts_router)
app.include_router(rules_router)


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    return {"status": "ok", "version": settings.APP_VERSION}


# ---------------------------------------------------------------------------
# WebSocket endpoint
# ---------------------------------------------------------------------------
@app.websocket("/ws/alerts")
async def websocket_alerts(
    websocket: WebSocket,
    tenant_id: str = Query(..., min_length=1),
) -> None:
    """WebSocket endpoint for real-time risk alert streaming.

    Accepts a connection for one tenant, sends a confirmation message, then
    keeps the connection alive until the client disconnects.

    Args:
        websocket: The incoming WebSocket connection.
        tenant_id: Tenant whose new alerts are pushed to the client.
    """
    await manager.connect(websocket, tenant_id)
    try:
        await websocket.send_json(
            {"type": "connected", "message": "Connected to risk alert stream"}
        )
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)
