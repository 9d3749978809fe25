"""
PinChat main entry point.

Starts a FastAPI HTTP server that:
  1. Accepts chat clients over a WebSocket at /ws (JSON frames: {"event", "data"})
  2. Exposes a small read-only REST API for inspecting live rooms
  3. Runs the persistence sync task for the lifetime of the app
"""
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from pinchat.config import APP_VERSION, CORS_ORIGINS, HOST, PORT, get_config_dict, save_config_dict
from pinchat.coordinator import RoomCoordinator
from pinchat.db.store import DocumentStore, create_store
from pinchat.persistence import PersistenceSync
from pinchat.transport import WebSocketHub

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("pinchat")


def create_app(store: Optional[DocumentStore] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        hub = WebSocketHub()
        coordinator = RoomCoordinator(hub)
        sync = PersistenceSync(coordinator, store or create_store())
        app.state.hub = hub
        app.state.coordinator = coordinator
        app.state.sync = sync
        await sync.start()
        logger.info(f"PinChat running at http://{HOST}:{PORT}")
        yield
        # Shutdown: final snapshot, then drop sockets and timers
        await sync.stop()
        await sync.store.close()
        coordinator.scheduler.cancel_all()
        await hub.close()

    app = FastAPI(
        title="PinChat",
        description="Room-based real-time chat relay.",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )

    # ─────────────────────────────────────────────
    # Chat WebSocket
    # ─────────────────────────────────────────────

    @app.websocket("/ws")
    async def chat_socket(websocket: WebSocket):
        hub: WebSocketHub = app.state.hub
        coordinator: RoomCoordinator = app.state.coordinator
        sid = await hub.connect(websocket)
        coordinator.connect(sid)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except ValueError:
                    logger.debug(f"Dropping non-JSON frame from {sid[:8]}")
                    continue
                if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                    continue
                coordinator.dispatch(sid, frame["event"], frame.get("data"))
        except WebSocketDisconnect:
            pass
        finally:
            coordinator.disconnect(sid)
            await hub.disconnect(sid)

    # ─────────────────────────────────────────────
    # Inspection REST API
    # ─────────────────────────────────────────────

    @app.get("/api/rooms")
    async def api_rooms():
        coordinator: RoomCoordinator = app.state.coordinator
        return [coordinator.room_summary(pin) for pin in coordinator.room_pins()]

    @app.get("/api/rooms/{pin}")
    async def api_room(pin: str):
        summary = app.state.coordinator.room_summary(pin)
        if summary is None:
            return JSONResponse({"detail": "Room not found"}, status_code=404)
        return summary

    class ConfigUpdate(BaseModel):
        HOST: Optional[str] = None
        PORT: Optional[int] = None
        HISTORY_LIMIT: Optional[int] = None
        ROOM_GRACE_SECONDS: Optional[float] = None
        STORE: Optional[str] = None
        PERSIST_STRATEGY: Optional[str] = None
        PERSIST_DEBOUNCE: Optional[float] = None
        PERSIST_INTERVAL: Optional[float] = None
        STORE_URL: Optional[str] = None
        CORS_ORIGINS: Optional[str] = None

    @app.get("/api/config")
    async def api_config():
        return get_config_dict()

    @app.put("/api/config")
    async def api_config_update(body: ConfigUpdate):
        # Written to data/config.json; applied on next start.
        save_config_dict(body.model_dump(exclude_none=True))
        return {"ok": True, "restart_required": True}

    @app.get("/health")
    async def health():
        sync: PersistenceSync = app.state.sync
        return {
            "status": "ok",
            "service": "PinChat",
            "rooms": len(app.state.coordinator.room_pins()),
            "connections": len(app.state.coordinator.connections),
            "persistence": {"saves": sync.saves, "failures": sync.failures, "dirty": sync.dirty},
        }

    return app


app = create_app()


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("pinchat.main:app", host=HOST, port=PORT)
