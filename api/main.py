#!/usr/bin/env python3
"""
FastAPI control surface for the market-making agent.

Provides REST and WebSocket endpoints with:
- Status, health and performance of the running agent
- Pending transactions and co-signing
- Configuration read and replacement
- Audit log with chain verification
- Live bus events over a sequenced WebSocket stream

The app wraps one Orchestrator handed to create_app(); there is no global
instance.
"""

import os
from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog
from dotenv import load_dotenv
from fastapi import Body, FastAPI, HTTPException, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from api.services.websocket_manager import EventStreamManager, json_safe
from perp_mm.core.errors import AuthorizationError, ConfigError, StartupError
from perp_mm.core.models import now_ms, utc_iso
from perp_mm.utils.log_config import setup_logging

logger = structlog.get_logger(__name__)

DEFAULT_ORIGINS = "http://localhost:3000,http://localhost:8080"


def create_app(orchestrator: Any, start_on_startup: bool = False) -> FastAPI:
    """
    Build the control surface around an orchestrator.

    Args:
        orchestrator: The agent's Orchestrator
        start_on_startup: Start the agent when the app starts

    Returns:
        Configured FastAPI app
    """
    stream = EventStreamManager(orchestrator.bus, snapshot=orchestrator.get_status)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("api_starting")
        stream.start()
        if start_on_startup:
            started = await orchestrator.start()
            logger.info("agent_autostart", started=started)
        logger.info("api_ready")

        yield

        logger.info("api_shutting_down")
        stream.stop()
        await orchestrator.stop()
        logger.info("api_shutdown_complete")

    app = FastAPI(
        title="perp-mm control API",
        description="Perpetual market-making agent control surface",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.event_stream = stream

    origins = os.environ.get("CORS_ORIGINS", DEFAULT_ORIGINS).split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in origins if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # REST Endpoints
    # ========================================================================

    @app.get("/health")
    async def health_check():
        """Component liveness."""
        health = await orchestrator.health_check()
        return json_safe({
            "status": "healthy" if health.get("healthy") else "degraded",
            "timestamp": utc_iso(now_ms()),
            **health,
        })

    @app.get("/status")
    async def get_status():
        return json_safe(orchestrator.get_status())

    @app.get("/performance")
    async def get_performance():
        return json_safe(orchestrator.get_performance_metrics())

    @app.get("/transactions/pending")
    async def get_pending_transactions():
        pending = orchestrator.get_pending_transactions()
        return json_safe({"transactions": pending, "count": len(pending)})

    @app.post("/transactions/{tx_id}/sign")
    async def sign_transaction(tx_id: str, payload: dict = Body(...)):
        """
        Add a co-signature to a pending transaction.

        Body: {"signer": "0x..."}
        """
        signer: Optional[str] = payload.get("signer")
        if not signer:
            raise HTTPException(status_code=400, detail="signer is required")
        try:
            tx = await orchestrator.sign_transaction(tx_id, signer)
        except AuthorizationError as e:
            logger.warning("sign_request_rejected", transaction_id=tx_id, error=str(e))
            raise HTTPException(status_code=403, detail=str(e))
        except StartupError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return json_safe(tx)

    @app.get("/config")
    async def get_config():
        return orchestrator.get_config()

    @app.put("/config")
    async def put_config(updates: dict = Body(...)):
        """Replace configuration sections; the agent restarts when running."""
        try:
            await orchestrator.update_config(updates)
        except ConfigError as e:
            logger.warning("config_update_rejected", error=str(e), path=e.path)
            raise HTTPException(status_code=422, detail={"error": str(e), "path": e.path})
        return orchestrator.get_config()

    @app.post("/start")
    async def start_agent():
        started = await orchestrator.start()
        if not started:
            raise HTTPException(status_code=503, detail="agent failed to start")
        return {"running": True, "timestamp": utc_iso(now_ms())}

    @app.post("/stop")
    async def stop_agent():
        await orchestrator.stop()
        logger.warning("agent_stopped_via_api")
        return {"running": False, "timestamp": utc_iso(now_ms())}

    @app.get("/audit")
    async def get_audit(limit: int = Query(100, ge=1, le=10_000)):
        try:
            audit = orchestrator.get_audit_log(limit)
        except StartupError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return json_safe({
            "entries": audit["entries"],
            "count": len(audit["entries"]),
            "valid": audit["verification"]["valid"],
            "verification": audit["verification"],
        })

    @app.get("/optimizer/results")
    async def get_optimizer_results(limit: int = Query(20, ge=1, le=100)):
        optimizer = orchestrator.optimizer
        if optimizer is None:
            return {"results": [], "count": 0}
        results = optimizer.get_results(limit)
        return json_safe({"results": results, "count": len(results)})

    # ========================================================================
    # WebSocket Endpoint
    # ========================================================================

    @app.websocket("/ws/events")
    async def websocket_endpoint(websocket: WebSocket):
        """
        Sequenced bus event stream.

        Channels are event type values, e.g. ``order``, ``transaction_pending``,
        ``circuit_breaker``.
        """
        await stream.connect(websocket)

    return app


def build_default_app() -> FastAPI:
    """App wired from the environment (PERP_MM_CONFIG, WALLET_ADDRESS)."""
    from perp_mm.config.loader import load_config
    from perp_mm.orchestrator import Orchestrator
    from perp_mm.security.signer import LocalSigner

    load_dotenv()
    setup_logging(os.environ.get("LOG_LEVEL", "INFO"))
    wallet = os.environ.get("WALLET_ADDRESS", "")
    overrides = {"wallet_address": wallet} if wallet else {}
    config = load_config(os.environ.get("PERP_MM_CONFIG", "config/settings.yaml"), **overrides)
    signer = LocalSigner(
        config.wallet_address or "",
        secret=os.environ.get("SIGNER_SECRET", ""),
        ready=bool(config.wallet_address),
    )
    return create_app(Orchestrator(config, signer), start_on_startup=True)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        build_default_app(),
        host=os.environ.get("API_HOST", "127.0.0.1"),
        port=int(os.environ.get("API_PORT", 8000)),
        log_level="info",
    )
