"""
PeerDrop signaling server — FastAPI application entry point.

Runs the device registry and the signaling relay, serves the REST API
and the /ws WebSocket endpoint that peers register and signal through.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.signaling import SignalingServer
from api.websocket import ClientHub
from config import API_HOST, API_PORT
from discovery.registry import Registry
from discovery.relay import Relay
from events import event_payload

logger = logging.getLogger(__name__)


def create_app(registry: Registry | None = None) -> FastAPI:
    """Build the app with its own registry, relay and client hub."""
    registry = registry or Registry()
    relay = Relay(registry)
    hub = ClientHub()
    signaling = SignalingServer(registry, relay, hub)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop background services."""
        logger.info("Starting PeerDrop signaling services...")

        # Every membership change goes out to every client
        async def on_membership_changed(event):
            await hub.broadcast("devices_updated", event_payload(event))

        unsubscribe = registry.on_membership_changed(on_membership_changed)
        await registry.start()
        logger.info(f"PeerDrop signaling ready — API: {API_HOST}:{API_PORT}")
        try:
            yield
        finally:
            logger.info("Shutting down PeerDrop signaling services...")
            unsubscribe()
            await registry.stop()

    app = FastAPI(
        title="PeerDrop",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.relay = relay
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        try:
            await signaling.serve(websocket)
        except Exception as e:
            logger.error(f"WebSocket session error: {e}", exc_info=True)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
