"""
Wire-level event names and inbound payload models.

Every frame exchanged over the transport is ``{"event": <name>, "data": {...}}``.
Inbound payloads are validated with pydantic; a payload that fails validation
is a malformed request and is dropped without touching any state.
"""
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints, ValidationError, model_validator


def _not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be blank")
    return value


# Values are kept verbatim; " 1234 " and "1234" are different rooms.
NonEmpty = Annotated[str, StringConstraints(min_length=1), AfterValidator(_not_blank)]


# ─────────────────────────────────────────────
# Inbound event names
# ─────────────────────────────────────────────

JOIN_ROOM = "join_room"
LEAVE_ROOM = "leave_room"
SEND_MESSAGE = "send_message"
MESSAGE_REACTION = "message_reaction"
MESSAGE_SEEN = "message_seen"
MESSAGE_DELIVERED = "message_delivered"
UNSEND_MESSAGE = "unsend_message"
TYPING_START = "typing_start"
TYPING_STOP = "typing_stop"
CHANGE_THEME = "change_theme"
DELETE_ROOM = "delete_room"
GET_CURRENT_USERS = "get_current_users"

# ─────────────────────────────────────────────
# Outbound event names
# ─────────────────────────────────────────────

USER_JOINED = "user_joined"
USER_LEFT = "user_left"
CURRENT_USERS = "current_users"
USER_COUNT_UPDATE = "user_count_update"
CHAT_HISTORY = "chat_history"
MESSAGE = "message"
MESSAGE_SEEN_UPDATE = "message_seen_update"
MESSAGE_STATUS_UPDATE = "message_status_update"
MESSAGE_UNSENT = "message_unsent"
THEME_CHANGED = "theme_changed"
ROOM_DELETED = "room_deleted"


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True, extra="ignore")


class PinPayload(_Payload):
    pin: NonEmpty


class OptionalPinPayload(_Payload):
    pin: Optional[str] = None


class JoinRoom(_Payload):
    pin: NonEmpty
    user_name: NonEmpty = Field(alias="userName")


class SendMessage(_Payload):
    pin: NonEmpty
    message_id: NonEmpty = Field(alias="messageId")
    message: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    timestamp: Optional[str] = None
    sender: Optional[str] = None
    reply_to: Optional[str] = Field(default=None, alias="replyTo")

    @model_validator(mode="after")
    def _require_body(self) -> "SendMessage":
        if not self.message and not self.image_url:
            raise ValueError("message or imageUrl is required")
        return self


class MessageRef(_Payload):
    pin: NonEmpty
    message_id: NonEmpty = Field(alias="messageId")


class Reaction(MessageRef):
    reaction: NonEmpty


class Typing(_Payload):
    pin: NonEmpty
    user_name: Optional[str] = Field(default=None, alias="userName")


class ChangeTheme(_Payload):
    pin: NonEmpty
    theme: NonEmpty


PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    JOIN_ROOM: JoinRoom,
    LEAVE_ROOM: OptionalPinPayload,
    SEND_MESSAGE: SendMessage,
    MESSAGE_REACTION: Reaction,
    MESSAGE_SEEN: MessageRef,
    MESSAGE_DELIVERED: MessageRef,
    UNSEND_MESSAGE: MessageRef,
    TYPING_START: Typing,
    TYPING_STOP: Typing,
    CHANGE_THEME: ChangeTheme,
    DELETE_ROOM: PinPayload,
    GET_CURRENT_USERS: PinPayload,
}


def parse_payload(event: str, data) -> Optional[BaseModel]:
    """Validate ``data`` for ``event``. Returns None for unknown events or malformed payloads."""
    model = PAYLOAD_MODELS.get(event)
    if model is None:
        return None
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return None
    try:
        return model.model_validate(data)
    except ValidationError:
        return None
