import base64
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from murmur.adapters.database.dto import MessageStatus
from murmur.services.call import SignalingMessage


class ChatMessageEvent(BaseModel):
    type: Literal["message"] = "message"
    msg_id: str
    from_id: str
    to_id: str
    payload: str  # base64 of nonce + ciphertext + tag
    timestamp: int
    is_echo: bool = False
    group_id: str | None = None
    reply_to_id: str | None = None
    reply_to_text: str | None = None
    reply_to_sender: str | None = None

    @classmethod
    def encode_payload(cls, raw: bytes) -> str:
        return base64.b64encode(raw).decode("ascii")

    def raw_payload(self) -> bytes:
        return base64.b64decode(self.payload, validate=True)


class StatusEvent(BaseModel):
    type: Literal["status"] = "status"
    msg_id: str
    status: MessageStatus
    from_id: str | None = None
    to_id: str | None = None


class FriendRequestEvent(BaseModel):
    type: Literal["friend_request"] = "friend_request"
    from_id: str
    to_id: str
    username: str | None = None
    public_key: str


class FriendAcceptEvent(BaseModel):
    type: Literal["friend_accept"] = "friend_accept"
    from_id: str
    to_id: str
    public_key: str


class KeyUpdateEvent(BaseModel):
    type: Literal["key_update"] = "key_update"
    from_id: str
    to_id: str
    public_key: str


class TimeEvent(BaseModel):
    type: Literal["time"] = "time"
    server_time: int


class PresenceEvent(BaseModel):
    """Relay notice that a peer went online or offline, optionally with its current public key"""
    type: Literal["presence"] = "presence"
    peer_id: str
    status: Literal["online", "offline"]
    public_key: str | None = None


class PresenceQueryEvent(BaseModel):
    type: Literal["get_presence"] = "get_presence"
    peer_id: str


class QueueFlushEvent(BaseModel):
    """Messages the relay held while we were offline; entries are validated one by one"""
    type: Literal["queue_flush"] = "queue_flush"
    messages: list[dict[str, Any]] = Field(default_factory=list)


InboundEvent = Annotated[
    Union[
        ChatMessageEvent,
        StatusEvent,
        FriendRequestEvent,
        FriendAcceptEvent,
        KeyUpdateEvent,
        TimeEvent,
        PresenceEvent,
        QueueFlushEvent,
        SignalingMessage,
    ],
    Field(discriminator="type"),
]

inbound_event_adapter = TypeAdapter(InboundEvent)
