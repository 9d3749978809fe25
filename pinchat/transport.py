"""
Transport layer: named events to and from connections, plus per-connection
channel membership.

The coordinator only needs ``join``/``leave``/``emit``. ``emit`` is synchronous:
frames are resolved to their recipients at call time and queued, so a handler's
fan-out is complete before any other handler runs. Each WebSocket connection
has its own outbox drained by a dedicated sender task.
"""
import asyncio
import logging
import uuid
from typing import Any, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class Transport:
    """Interface the coordinator talks to."""

    def join(self, sid: str, channel: str) -> None:
        raise NotImplementedError

    def leave(self, sid: str, channel: str) -> None:
        raise NotImplementedError

    def emit(
        self,
        event: str,
        data: Optional[dict] = None,
        *,
        to: Optional[str] = None,
        room: Optional[str] = None,
        skip_sid: Optional[str] = None,
    ) -> None:
        """Send to one connection (``to``) or to a channel (``room``), optionally skipping one sid."""
        raise NotImplementedError


def make_frame(event: str, data: Optional[dict]) -> dict[str, Any]:
    return {"event": event, "data": data if data is not None else {}}


class WebSocketHub(Transport):
    def __init__(self) -> None:
        self._sockets: dict[str, WebSocket] = {}
        self._outboxes: dict[str, asyncio.Queue] = {}
        self._senders: dict[str, asyncio.Task] = {}
        self._channels: dict[str, set[str]] = {}
        self._memberships: dict[str, set[str]] = {}

    # ── Connection lifecycle ───────────────────

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        sid = uuid.uuid4().hex
        self._sockets[sid] = websocket
        self._outboxes[sid] = asyncio.Queue()
        self._memberships[sid] = set()
        self._senders[sid] = asyncio.create_task(self._pump(sid))
        return sid

    async def disconnect(self, sid: str) -> None:
        """Drop the connection from every channel and flush its outbox."""
        for channel in list(self._memberships.pop(sid, ())):
            self._discard(sid, channel)
        self._sockets.pop(sid, None)
        outbox = self._outboxes.pop(sid, None)
        task = self._senders.pop(sid, None)
        if outbox is not None:
            outbox.put_nowait(None)
        if task is not None and task is not asyncio.current_task():
            try:
                await asyncio.wait_for(task, timeout=1.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                task.cancel()

    async def close(self) -> None:
        for sid in list(self._sockets):
            await self.disconnect(sid)

    def channel_members(self, channel: str) -> set[str]:
        return set(self._channels.get(channel, ()))

    # ── Transport interface ────────────────────

    def join(self, sid: str, channel: str) -> None:
        if sid not in self._sockets:
            return
        self._channels.setdefault(channel, set()).add(sid)
        self._memberships[sid].add(channel)

    def leave(self, sid: str, channel: str) -> None:
        if sid in self._memberships:
            self._memberships[sid].discard(channel)
        self._discard(sid, channel)

    def emit(self, event, data=None, *, to=None, room=None, skip_sid=None) -> None:
        frame = make_frame(event, data)
        if to is not None:
            targets = [to]
        elif room is not None:
            targets = [s for s in self._channels.get(room, ()) if s != skip_sid]
        else:
            targets = [s for s in self._sockets if s != skip_sid]
        for sid in targets:
            outbox = self._outboxes.get(sid)
            if outbox is not None:
                outbox.put_nowait(frame)

    # ── Internals ──────────────────────────────

    def _discard(self, sid: str, channel: str) -> None:
        members = self._channels.get(channel)
        if members is None:
            return
        members.discard(sid)
        if not members:
            del self._channels[channel]

    async def _pump(self, sid: str) -> None:
        outbox = self._outboxes[sid]
        websocket = self._sockets[sid]
        while True:
            frame = await outbox.get()
            if frame is None:
                break
            try:
                await websocket.send_json(frame)
            except Exception as exc:
                # Peer went away; the receive loop reports the disconnect.
                logger.debug(f"Send to {sid[:8]} failed: {type(exc).__name__}: {exc}")
                if self._outboxes.get(sid) is outbox:
                    del self._outboxes[sid]
                break
