"""
Room coordinator: the in-memory owner of every room, member, message, status
and reaction table.

All handlers are synchronous and run to completion on the event loop. They
mutate the tables, queue outbound events on the transport and return; nothing
in here awaits, so two handlers never interleave. Deferred work (grace-period
room teardown) goes through the keyed ``Scheduler`` and re-validates state
when it fires.
"""
import logging
import time
from typing import Callable, Optional

from pinchat import events
from pinchat.config import HISTORY_LIMIT, ROOM_GRACE_SECONDS
from pinchat.models import ChatMessage, Connection, Member, MessageStatus, RoomMeta
from pinchat.scheduler import Scheduler
from pinchat.transport import Transport

logger = logging.getLogger(__name__)

MessageKey = tuple[str, str]  # (pin, messageId)


def _expiry_key(pin: str) -> tuple[str, str]:
    return ("room-expiry", pin)


class RoomCoordinator:
    def __init__(
        self,
        transport: Transport,
        scheduler: Optional[Scheduler] = None,
        *,
        history_limit: int = HISTORY_LIMIT,
        grace_seconds: float = ROOM_GRACE_SECONDS,
        clock: Callable[[], float] = time.time,
        on_mutation: Optional[Callable[[], None]] = None,
    ) -> None:
        self.transport = transport
        self.scheduler = scheduler or Scheduler()
        self.history_limit = history_limit
        self.grace_seconds = grace_seconds
        self.clock = clock
        self.on_mutation = on_mutation

        self.connections: dict[str, Connection] = {}
        self.rooms: dict[str, set[str]] = {}
        self.members: dict[str, list[Member]] = {}
        self.themes: dict[str, str] = {}
        self.history: dict[str, list[ChatMessage]] = {}
        self.statuses: dict[MessageKey, MessageStatus] = {}
        self.reactions: dict[MessageKey, dict[str, int]] = {}
        self.room_meta: dict[str, RoomMeta] = {}
        self._seq = 0

        self._handlers: dict[str, Callable] = {
            events.JOIN_ROOM: lambda sid, p: self.join_room(sid, p.pin, p.user_name),
            events.LEAVE_ROOM: lambda sid, p: self.leave_room(sid, p.pin),
            events.SEND_MESSAGE: lambda sid, p: self.send_message(
                sid, p.pin, p.message_id,
                message=p.message, image_url=p.image_url, timestamp=p.timestamp,
                sender=p.sender, reply_to=p.reply_to,
            ),
            events.MESSAGE_REACTION: lambda sid, p: self.react(sid, p.pin, p.message_id, p.reaction),
            events.MESSAGE_SEEN: lambda sid, p: self.message_seen(sid, p.pin, p.message_id),
            events.MESSAGE_DELIVERED: lambda sid, p: self.message_delivered(sid, p.pin, p.message_id),
            events.UNSEND_MESSAGE: lambda sid, p: self.unsend_message(sid, p.pin, p.message_id),
            events.TYPING_START: lambda sid, p: self.typing(sid, p.pin, p.user_name, started=True),
            events.TYPING_STOP: lambda sid, p: self.typing(sid, p.pin, p.user_name, started=False),
            events.CHANGE_THEME: lambda sid, p: self.change_theme(sid, p.pin, p.theme),
            events.DELETE_ROOM: lambda sid, p: self.delete_room(sid, p.pin),
            events.GET_CURRENT_USERS: lambda sid, p: self.get_current_users(sid, p.pin),
        }

    # ─────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────

    def dispatch(self, sid: str, event: str, data) -> None:
        """Route one inbound event. Unknown events and malformed payloads are dropped."""
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug(f"Ignoring unknown event '{event}' from {sid[:8]}")
            return
        payload = events.parse_payload(event, data)
        if payload is None:
            logger.debug(f"Ignoring malformed '{event}' from {sid[:8]}")
            return
        try:
            handler(sid, payload)
        except Exception:
            logger.exception(f"Handler for '{event}' failed (sid={sid[:8]})")

    # ─────────────────────────────────────────────
    # Connections and membership
    # ─────────────────────────────────────────────

    def connect(self, sid: str) -> Connection:
        conn = self.connections.get(sid)
        if conn is None:
            conn = self.connections[sid] = Connection(sid=sid)
            logger.info(f"User connected: {sid}")
        return conn

    def disconnect(self, sid: str) -> None:
        conn = self.connections.pop(sid, None)
        if conn is None:
            return
        logger.info(f"User disconnected: {sid}")
        if conn.room is not None:
            self._leave(sid, conn)

    def join_room(self, sid: str, pin: Optional[str], user_name: Optional[str]) -> None:
        if not pin or not user_name:
            return
        conn = self.connect(sid)
        if conn.room is not None and conn.room != pin:
            self._leave(sid, conn)

        # A pending teardown must not fire on a room someone is back in.
        self.scheduler.cancel(_expiry_key(pin))

        now = self.clock()
        sids = self.rooms.setdefault(pin, set())
        if pin not in self.room_meta:
            self.room_meta[pin] = RoomMeta(created_at=now, last_active=now)
        log = self.history.setdefault(pin, [])
        sids.add(sid)
        roster = self.members.setdefault(pin, [])
        member = Member(sid=sid, user_name=user_name, joined_at=now)
        for i, existing in enumerate(roster):
            if existing.sid == sid:
                roster[i] = member
                break
        else:
            roster.append(member)

        conn.room = pin
        conn.user_name = user_name
        self.transport.join(sid, pin)

        theme = self.themes.get(pin)
        if theme is not None:
            self.transport.emit(events.THEME_CHANGED, {"theme": theme}, to=sid)
        self._broadcast_members(pin)
        self.transport.emit(
            events.CHAT_HISTORY,
            {"messages": [self._history_entry(pin, m, sid) for m in log]},
            to=sid,
        )
        self.transport.emit(
            events.USER_JOINED,
            {"message": f"{user_name} joined the chat", "userName": user_name},
            room=pin, skip_sid=sid,
        )

        for msg in log:
            if msg.sender_id == sid:
                continue
            status = self.statuses.setdefault((pin, msg.id), MessageStatus())
            if status.delivered:
                continue
            status.delivered = True
            if msg.sender_id and msg.sender_id in self.connections:
                self.transport.emit(
                    events.MESSAGE_STATUS_UPDATE,
                    {"messageId": msg.id, "status": status.status},
                    to=msg.sender_id,
                )

        logger.info(f"User {sid} ({user_name}) joined room {pin}")
        self._touch(pin)

    def leave_room(self, sid: str, pin: Optional[str] = None) -> None:
        conn = self.connections.get(sid)
        if conn is None or conn.room is None:
            return
        if pin and pin != conn.room:
            return
        self._leave(sid, conn)

    def get_current_users(self, sid: str, pin: str) -> None:
        self.transport.emit(events.CURRENT_USERS, {"users": self._roster(pin)}, to=sid)
        self.transport.emit(events.USER_COUNT_UPDATE, {"count": self.member_count(pin)}, to=sid)

    def _leave(self, sid: str, conn: Connection) -> None:
        pin = conn.room
        user_name = conn.user_name
        conn.room = None
        self.transport.leave(sid, pin)

        sids = self.rooms.get(pin)
        if sids is None:
            return
        sids.discard(sid)
        self.members[pin] = [m for m in self.members.get(pin, []) if m.sid != sid]
        self._broadcast_members(pin)

        if not sids:
            self.expire_later(pin)
        else:
            self.transport.emit(
                events.USER_LEFT,
                {"message": f"{user_name} left the chat", "userName": user_name},
                room=pin,
            )
        logger.info(f"User {sid} left room {pin}")
        self._touch(pin)

    def expire_later(self, pin: str) -> None:
        """Tear the room down after the grace period unless someone joins first."""
        self.scheduler.schedule(_expiry_key(pin), self.grace_seconds, lambda: self._expire_room(pin))
        logger.info(f"Room {pin} is empty; teardown in {self.grace_seconds:g}s")

    def _expire_room(self, pin: str) -> None:
        if self.rooms.get(pin):
            return
        self._purge(pin)
        logger.info(f"Room {pin} removed after grace period")
        self._touch(None)

    # ─────────────────────────────────────────────
    # Messages
    # ─────────────────────────────────────────────

    def send_message(
        self,
        sid: str,
        pin: Optional[str],
        message_id: Optional[str],
        *,
        message: Optional[str] = None,
        image_url: Optional[str] = None,
        timestamp: Optional[str] = None,
        sender: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> Optional[ChatMessage]:
        if not pin or not message_id or not (message or image_url):
            return None
        if pin not in self.rooms:
            logger.debug(f"Dropping message {message_id} for unknown room {pin}")
            return None
        log = self.history.setdefault(pin, [])
        if self._index_of(pin, message_id) is not None:
            logger.debug(f"Dropping duplicate message {message_id} in room {pin}")
            return None

        conn = self.connections.get(sid)
        sender_name = sender or (conn.user_name if conn else None) or "Anonymous"
        self._seq += 1
        msg = ChatMessage(
            id=message_id, sender=sender_name, sender_id=sid,
            message=message, image_url=image_url, timestamp=timestamp,
            reply_to=reply_to, seq=self._seq,
        )
        log.append(msg)
        status = self.statuses[(pin, message_id)] = MessageStatus()
        while len(log) > self.history_limit:
            evicted = log.pop(0)
            self._drop_records(pin, evicted.id)

        self.transport.emit(
            events.MESSAGE,
            {
                "message": message, "imageUrl": image_url, "sender": sender_name,
                "timestamp": timestamp, "messageId": message_id, "replyTo": reply_to,
            },
            room=pin, skip_sid=sid,
        )
        if len(self.rooms[pin]) > 1:
            status.delivered = True
            self.transport.emit(
                events.MESSAGE_STATUS_UPDATE,
                {"messageId": message_id, "status": status.status},
                to=sid,
            )
        logger.debug(f"Message {message_id} from {sender_name} in room {pin}")
        self._touch(pin)
        return msg

    def unsend_message(self, sid: str, pin: Optional[str], message_id: Optional[str]) -> bool:
        idx = self._index_of(pin, message_id)
        if idx is None:
            return False
        del self.history[pin][idx]
        self._drop_records(pin, message_id)
        self.transport.emit(events.MESSAGE_UNSENT, {"messageId": message_id}, room=pin)
        self._touch(pin)
        return True

    def react(self, sid: str, pin: Optional[str], message_id: Optional[str], reaction: Optional[str]) -> Optional[int]:
        if not reaction or self._index_of(pin, message_id) is None:
            return None
        tally = self.reactions.setdefault((pin, message_id), {})
        tally[reaction] = tally.get(reaction, 0) + 1
        self.transport.emit(
            events.MESSAGE_REACTION,
            {"messageId": message_id, "reaction": reaction, "count": tally[reaction], "reactions": dict(tally)},
            room=pin,
        )
        self._touch(pin)
        return tally[reaction]

    def message_seen(self, sid: str, pin: Optional[str], message_id: Optional[str]) -> None:
        if self._index_of(pin, message_id) is None:
            return
        conn = self.connections.get(sid)
        if conn is None or not conn.user_name:
            return
        status = self.statuses.setdefault((pin, message_id), MessageStatus())
        status.delivered = True
        if conn.user_name not in status.seen_by:
            status.seen_by.append(conn.user_name)
        self.transport.emit(
            events.MESSAGE_SEEN_UPDATE,
            {"messageId": message_id, "seenBy": list(status.seen_by), "status": status.status},
            room=pin,
        )
        self._touch(pin)

    def message_delivered(self, sid: str, pin: Optional[str], message_id: Optional[str]) -> None:
        if self._index_of(pin, message_id) is None:
            return
        status = self.statuses.setdefault((pin, message_id), MessageStatus())
        status.delivered = True
        self.transport.emit(
            events.MESSAGE_STATUS_UPDATE,
            {"messageId": message_id, "status": status.status},
            room=pin,
        )
        self._touch(pin)

    def typing(self, sid: str, pin: Optional[str], user_name: Optional[str] = None, *, started: bool = True) -> None:
        if not pin:
            return
        if not user_name:
            conn = self.connections.get(sid)
            user_name = conn.user_name if conn else None
        event = events.TYPING_START if started else events.TYPING_STOP
        self.transport.emit(event, {"userName": user_name}, room=pin, skip_sid=sid)

    # ─────────────────────────────────────────────
    # Room settings
    # ─────────────────────────────────────────────

    def change_theme(self, sid: str, pin: Optional[str], theme: Optional[str]) -> None:
        if not pin or not theme or pin not in self.rooms:
            return
        self.themes[pin] = theme
        self.transport.emit(events.THEME_CHANGED, {"theme": theme}, room=pin)
        self._touch(pin)

    def delete_room(self, sid: str, pin: Optional[str]) -> bool:
        if not pin or not self._known(pin):
            return False
        self.transport.emit(events.ROOM_DELETED, {"pin": pin}, room=pin)
        for member_sid in self.rooms.get(pin, ()):
            conn = self.connections.get(member_sid)
            if conn is not None and conn.room == pin:
                conn.room = None
            self.transport.leave(member_sid, pin)
        self._purge(pin)
        logger.info(f"Room {pin} deleted by {sid}")
        self._touch(None)
        return True

    # ─────────────────────────────────────────────
    # Inspection
    # ─────────────────────────────────────────────

    def room_pins(self) -> list[str]:
        return sorted(set(self.rooms) | set(self.history) | set(self.themes))

    def member_count(self, pin: str) -> int:
        return len(self.rooms.get(pin, ()))

    def room_summary(self, pin: str) -> Optional[dict]:
        if not self._known(pin):
            return None
        meta = self.room_meta.get(pin)
        return {
            "pin": pin,
            "userCount": self.member_count(pin),
            "users": self._roster(pin),
            "theme": self.themes.get(pin),
            "messageCount": len(self.history.get(pin, [])),
            "createdAt": meta.created_at if meta else None,
            "lastActive": meta.last_active if meta else None,
            "expiring": self.scheduler.pending(_expiry_key(pin)),
        }

    # ─────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────

    def _known(self, pin: str) -> bool:
        return pin in self.rooms or pin in self.history or pin in self.themes

    def _roster(self, pin: str) -> list[dict]:
        return [m.to_dict() for m in self.members.get(pin, [])]

    def _broadcast_members(self, pin: str) -> None:
        self.transport.emit(events.USER_COUNT_UPDATE, {"count": self.member_count(pin)}, room=pin)
        self.transport.emit(events.CURRENT_USERS, {"users": self._roster(pin)}, room=pin)

    def _history_entry(self, pin: str, msg: ChatMessage, viewer_sid: str) -> dict:
        entry = msg.to_dict()
        entry["type"] = "sent" if msg.sender_id == viewer_sid else "received"
        status = self.statuses.get((pin, msg.id))
        entry["status"] = status.status if status else "sent"
        entry["seenBy"] = list(status.seen_by) if status else []
        entry["reactions"] = dict(self.reactions.get((pin, msg.id), {}))
        return entry

    def _index_of(self, pin: Optional[str], message_id: Optional[str]) -> Optional[int]:
        if not pin or not message_id:
            return None
        for i, msg in enumerate(self.history.get(pin, ())):
            if msg.id == message_id:
                return i
        return None

    def _drop_records(self, pin: str, message_id: str) -> None:
        self.statuses.pop((pin, message_id), None)
        self.reactions.pop((pin, message_id), None)

    def _purge(self, pin: str) -> None:
        self.scheduler.cancel(_expiry_key(pin))
        self.rooms.pop(pin, None)
        self.members.pop(pin, None)
        self.themes.pop(pin, None)
        self.history.pop(pin, None)
        self.room_meta.pop(pin, None)
        for key in [k for k in self.statuses if k[0] == pin]:
            del self.statuses[key]
        for key in [k for k in self.reactions if k[0] == pin]:
            del self.reactions[key]

    def _touch(self, pin: Optional[str]) -> None:
        meta = self.room_meta.get(pin) if pin is not None else None
        if meta is not None:
            meta.last_active = self.clock()
        if self.on_mutation is not None:
            self.on_mutation()
