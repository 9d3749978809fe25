"""
Persistence sync: copies coordinator state to the document store off the hot path.

Snapshots are full replacements in both directions. ``build_snapshot`` flattens
the tables; ``apply_snapshot`` seeds them at startup. The store is a recovery
cache, never the source of truth: every failure is logged and swallowed, and
no save ever runs inside an event handler.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from pinchat.config import (
    EXPIRE_RESTORED_ROOMS,
    PERSIST_DEBOUNCE_SECONDS,
    PERSIST_INTERVAL_SECONDS,
    PERSIST_STRATEGY,
)
from pinchat.coordinator import RoomCoordinator
from pinchat.db.store import DocumentStore
from pinchat.models import ChatMessage, MessageStatus, RoomMeta
from pinchat.scheduler import Scheduler

logger = logging.getLogger(__name__)

STRATEGIES = {"debounce", "interval"}


# ─────────────────────────────────────────────
# Snapshot <-> tables
# ─────────────────────────────────────────────

def build_snapshot(coordinator: RoomCoordinator) -> dict:
    rooms = {}
    for pin in coordinator.room_pins():
        log = coordinator.history.get(pin, [])
        meta = coordinator.room_meta.get(pin)
        rooms[pin] = {
            "messages": [m.to_dict() for m in log],
            "theme": coordinator.themes.get(pin),
            "userCount": coordinator.member_count(pin),
            "members": [m.to_dict() for m in coordinator.members.get(pin, [])],
            "createdAt": meta.created_at if meta else None,
            "lastActive": meta.last_active if meta else None,
            "status": {
                m.id: coordinator.statuses[(pin, m.id)].to_dict()
                for m in log if (pin, m.id) in coordinator.statuses
            },
            "reactions": {
                m.id: dict(coordinator.reactions[(pin, m.id)])
                for m in log if (pin, m.id) in coordinator.reactions
            },
        }
    return {"timestamp": datetime.now(timezone.utc).isoformat(), "rooms": rooms}


def _restore_room(coordinator: RoomCoordinator, pin: str, entry: dict) -> None:
    messages = [ChatMessage.from_dict(m) for m in entry.get("messages") or []]
    messages = messages[-coordinator.history_limit:] if coordinator.history_limit > 0 else []
    ids = {m.id for m in messages}
    statuses = {
        mid: MessageStatus.from_dict(s)
        for mid, s in (entry.get("status") or {}).items() if mid in ids
    }
    reactions = {
        mid: {str(sym): int(n) for sym, n in tally.items() if int(n) > 0}
        for mid, tally in (entry.get("reactions") or {}).items() if mid in ids
    }
    theme = entry.get("theme")
    now = coordinator.clock()
    meta = RoomMeta(
        created_at=float(entry.get("createdAt") or now),
        last_active=float(entry.get("lastActive") or now),
    )

    # Everything parsed; replace this pin's persisted tables in one go.
    for key in [k for k in coordinator.statuses if k[0] == pin]:
        del coordinator.statuses[key]
    for key in [k for k in coordinator.reactions if k[0] == pin]:
        del coordinator.reactions[key]
    coordinator.history[pin] = messages
    for m in messages:
        coordinator.statuses[(pin, m.id)] = statuses.get(m.id) or MessageStatus()
        if reactions.get(m.id):
            coordinator.reactions[(pin, m.id)] = reactions[m.id]
    if theme:
        coordinator.themes[pin] = str(theme)
    else:
        coordinator.themes.pop(pin, None)
    coordinator.room_meta[pin] = meta
    coordinator.rooms.setdefault(pin, set())
    coordinator.members.setdefault(pin, [])
    if messages:
        coordinator._seq = max(coordinator._seq, max(m.seq for m in messages))


def apply_snapshot(coordinator: RoomCoordinator, snapshot: Optional[dict], *, expire_restored: bool = True) -> int:
    """Seed the coordinator from a snapshot. Returns the number of rooms restored."""
    if not isinstance(snapshot, dict) or not isinstance(snapshot.get("rooms"), dict):
        return 0
    restored = 0
    for pin, entry in snapshot["rooms"].items():
        if not isinstance(entry, dict):
            logger.warning(f"Skipping malformed snapshot entry for room {pin}")
            continue
        try:
            _restore_room(coordinator, str(pin), entry)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Skipping malformed snapshot entry for room {pin}: {type(e).__name__}: {e}")
            continue
        restored += 1
        if expire_restored and not coordinator.rooms.get(str(pin)):
            coordinator.expire_later(str(pin))
    return restored


# ─────────────────────────────────────────────
# Sync task
# ─────────────────────────────────────────────

class PersistenceSync:
    def __init__(
        self,
        coordinator: RoomCoordinator,
        store: DocumentStore,
        *,
        strategy: str = PERSIST_STRATEGY,
        debounce_seconds: float = PERSIST_DEBOUNCE_SECONDS,
        interval_seconds: float = PERSIST_INTERVAL_SECONDS,
        expire_restored: bool = EXPIRE_RESTORED_ROOMS,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        if strategy not in STRATEGIES:
            logger.warning(f"Unknown persistence strategy '{strategy}', using 'debounce'")
            strategy = "debounce"
        self.coordinator = coordinator
        self.store = store
        self.strategy = strategy
        self.debounce_seconds = debounce_seconds
        self.interval_seconds = interval_seconds
        self.expire_restored = expire_restored
        self.scheduler = scheduler or Scheduler()
        self.dirty = False
        self.saves = 0
        self.failures = 0
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self.coordinator.on_mutation = self.mark_dirty
        await self.load()
        if self.strategy == "interval":
            self._loop_task = asyncio.create_task(self._interval_loop())
        logger.info(f"Persistence sync started ({self.strategy})")

    async def stop(self) -> None:
        """Cancel timers, wait for in-flight saves, then write one last snapshot."""
        if self.coordinator.on_mutation == self.mark_dirty:
            self.coordinator.on_mutation = None
        self.scheduler.cancel_all()
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self.save()
        logger.info("Persistence sync stopped")

    async def load(self) -> int:
        try:
            snapshot = await self.store.load()
        except Exception as e:
            logger.warning(f"Could not load snapshot, starting empty: {type(e).__name__}: {e}")
            return 0
        if not snapshot:
            logger.info("No prior snapshot; starting empty")
            return 0
        restored = apply_snapshot(self.coordinator, snapshot, expire_restored=self.expire_restored)
        logger.info(f"Restored {restored} room(s) from snapshot {snapshot.get('timestamp')}")
        return restored

    def mark_dirty(self) -> None:
        self.dirty = True
        if self.strategy == "debounce":
            self.scheduler.schedule("save", self.debounce_seconds, self._spawn_save)

    def _spawn_save(self) -> None:
        task = asyncio.get_running_loop().create_task(self.save())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def save(self) -> bool:
        async with self._lock:
            snapshot = build_snapshot(self.coordinator)
            self.dirty = False
            try:
                await self.store.save(snapshot)
            except Exception as e:
                self.dirty = True
                self.failures += 1
                logger.warning(f"Snapshot save failed: {type(e).__name__}: {e}")
                return False
            self.saves += 1
            logger.debug(f"Snapshot saved ({len(snapshot['rooms'])} rooms)")
            return True

    async def _interval_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.save()
