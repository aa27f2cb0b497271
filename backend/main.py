"""
ShareUp: FastAPI application entry point.

Runs the signaling relay behind a WebSocket endpoint, sweeps expired rooms
in the background, and serves a small REST API for room status.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import (
    ALLOWED_ORIGINS,
    API_HOST,
    API_PORT,
    APP_NAME,
    APP_VERSION,
    ROOM_SWEEP_INTERVAL,
    TIER_TOKENS,
)
from signaling.policy import DailyRoomLimiter, TokenTierResolver
from signaling.relay import SignalingRelay
from signaling.store import InMemoryRoomStore

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def default_relay() -> SignalingRelay:
    return SignalingRelay(
        store=InMemoryRoomStore(),
        tier_resolver=TokenTierResolver.from_config(TIER_TOKENS),
        limiter=DailyRoomLimiter(),
    )


def create_app(relay: SignalingRelay | None = None) -> FastAPI:
    relay = relay or default_relay()
    ws_manager = ConnectionManager(relay)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop background services."""
        logger.info(f"Starting {APP_NAME} relay...")

        try:
            await relay.start(sweep_interval=ROOM_SWEEP_INTERVAL)
            logger.info(f"{APP_NAME} ready on {API_HOST}:{API_PORT}")
            yield
        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            raise
        finally:
            logger.info(f"Shutting down {APP_NAME} relay...")
            await relay.stop()

    app = FastAPI(
        title=APP_NAME,
        version=APP_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Inject services into routes
    init_routes(relay, ws_manager)
    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": APP_VERSION}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await ws_manager.serve(websocket)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
