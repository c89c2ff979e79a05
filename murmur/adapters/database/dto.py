import json
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator, model_validator


class FriendState(StrEnum):
    PENDING_OUTGOING = "pending_outgoing"
    PENDING_INCOMING = "pending_incoming"
    FRIEND = "friend"


class MessageStatus(StrEnum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# --- accounts --- #

class UserAccountRequestDTO(BaseModel):
    id: str
    username: str
    salt: bytes
    kdf_params: str  # json of the tagged KdfParams structure
    public_key: str
    encrypted_private_key: bytes
    verification_tag: bytes
    created_at: int

class UserAccountDTO(UserAccountRequestDTO):
    public_key: str | None = None
    encrypted_private_key: bytes | None = None
    verification_tag: bytes | None = None
    created_at: int | None = None

class UpdateKeyPairRequestDTO(BaseModel):
    id: str
    public_key: str
    encrypted_private_key: bytes


# --- friends --- #

class FriendRequestDTO(BaseModel):
    uuid: str
    username: str
    avatar: str | None = None
    status_message: str | None = None
    state: FriendState
    is_blocked: bool = False
    public_key: str | None = None

class FriendDTO(FriendRequestDTO):
    pass

class UpdateFriendRequestDTO(BaseModel):
    uuid: str
    username: str | None = None
    avatar: str | None = None
    status_message: str | None = None
    state: FriendState | None = None
    is_blocked: bool | None = None
    public_key: str | None = None


# --- conversations --- #

class ConversationBaseDTO(BaseModel):
    id: str
    username: str
    avatar: str | None = None
    last_message: str | None = None
    last_timestamp: int = 0
    unread_count: int = Field(default=0, ge=0)
    secret: str | None = None
    is_group: bool = False
    participants: list[str] | None = None

class ConversationRequestDTO(ConversationBaseDTO):
    @model_validator(mode="after")
    def _participants_iff_group(self):
        if self.is_group and not self.participants:
            raise ValueError("Group conversation requires a participant list")
        if not self.is_group and self.participants:
            raise ValueError("Participants are only allowed on group conversations")
        return self

class UpdateConversationRequestDTO(BaseModel):
    id: str
    username: str | None = None
    avatar: str | None = None
    last_message: str | None = None
    last_timestamp: int | None = None
    unread_count: int | None = Field(default=None, ge=0)
    secret: str | None = None

class ConversationDTO(ConversationBaseDTO):
    @field_validator("participants", mode="before")
    @classmethod
    def _decode_participants(cls, value):
        if isinstance(value, str):
            return json.loads(value)
        return value

# --- messages --- #

class ReplyReference(BaseModel):
    id: str
    text: str | None = None
    sender: str | None = None

class MessageRequestDTO(BaseModel):
    msg_id: str
    from_id: str
    to_id: str
    text: str = ""
    raw_payload: bytes | None = None
    timestamp: int | None = None  # unix ms, clock service fills it when missing
    status: MessageStatus = MessageStatus.SENDING
    is_echo: bool = False
    group_id: str | None = None
    reply_to: ReplyReference | None = None

class MessageDTO(BaseModel):
    id: int
    msg_id: str
    conversation_id: str
    from_id: str
    to_id: str
    text: str
    raw_payload: bytes | None = None
    timestamp: int
    status: MessageStatus
    is_echo: bool = False
    reply_to_id: str | None = None
    reply_to_text: str | None = None
    reply_to_sender: str | None = None
