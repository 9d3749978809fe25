"""
Data models (dataclasses) for PinChat.
These are plain Python objects held in the coordinator tables and flattened
into persistence snapshots.
"""
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Connection:
    sid: str
    room: Optional[str] = None   # pin of the room this connection is in
    user_name: Optional[str] = None


@dataclass
class Member:
    sid: str
    user_name: str
    joined_at: float             # epoch seconds

    def to_dict(self) -> dict:
        return {"id": self.sid, "userName": self.user_name, "joinedAt": self.joined_at}


@dataclass
class ChatMessage:
    id: str                      # client-generated messageId
    sender: str                  # display name
    sender_id: Optional[str]     # sid of the sending connection
    message: Optional[str]
    image_url: Optional[str]
    timestamp: Optional[str]
    reply_to: Optional[str]
    seq: int                     # insertion order within the room

    def to_dict(self) -> dict:
        return {
            "messageId": self.id,
            "sender": self.sender,
            "senderId": self.sender_id,
            "message": self.message,
            "imageUrl": self.image_url,
            "timestamp": self.timestamp,
            "replyTo": self.reply_to,
            "seq": self.seq,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChatMessage":
        return cls(
            id=data["messageId"],
            sender=data.get("sender") or "",
            sender_id=data.get("senderId"),
            message=data.get("message"),
            image_url=data.get("imageUrl"),
            timestamp=data.get("timestamp"),
            reply_to=data.get("replyTo"),
            seq=int(data.get("seq") or 0),
        )


@dataclass
class MessageStatus:
    delivered: bool = False
    seen_by: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        """sent -> delivered -> seen"""
        if self.seen_by:
            return "seen"
        if self.delivered:
            return "delivered"
        return "sent"

    def to_dict(self) -> dict:
        return {"delivered": self.delivered, "seenBy": list(self.seen_by), "status": self.status}

    @classmethod
    def from_dict(cls, data: dict) -> "MessageStatus":
        return cls(delivered=bool(data.get("delivered")), seen_by=list(data.get("seenBy") or []))


@dataclass
class RoomMeta:
    created_at: float
    last_active: float
