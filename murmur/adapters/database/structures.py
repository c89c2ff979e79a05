from sqlalchemy import BigInteger, Boolean, Integer, LargeBinary, String, Text, UniqueConstraint, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    username: Mapped[str] = mapped_column(String(64), index=True)
    salt: Mapped[bytes] = mapped_column(LargeBinary)
    kdf_params: Mapped[str] = mapped_column(Text)

    public_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    encrypted_private_key: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    verification_tag: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    created_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class Friend(Base):
    __tablename__ = "friends"

    uuid: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str] = mapped_column(String(64), index=True)
    avatar: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    state: Mapped[str] = mapped_column(String(32), default="friend")
    public_key: Mapped[str | None] = mapped_column(Text, nullable=True)


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str] = mapped_column(String(64), index=True)
    avatar: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_timestamp: Mapped[int] = mapped_column(BigInteger, default=0, index=True)
    unread_count: Mapped[int] = mapped_column(Integer, default=0)
    secret: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_group: Mapped[bool] = mapped_column(Boolean, default=False)
    participants: Mapped[str | None] = mapped_column(Text, nullable=True)  # json list of uuids


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("msg_id", "is_echo", name="uq_messages_msg_id_is_echo"),
        Index("ix_messages_conversation_id", "conversation_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    msg_id: Mapped[str] = mapped_column(String(64), index=True)
    conversation_id: Mapped[str] = mapped_column(String(64))
    from_id: Mapped[str] = mapped_column(String(64), index=True)
    to_id: Mapped[str] = mapped_column(String(64), index=True)
    text: Mapped[str] = mapped_column(Text, default="")
    timestamp: Mapped[int] = mapped_column(BigInteger, index=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    is_echo: Mapped[bool] = mapped_column(Boolean, default=False)

    raw_payload: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

    reply_to_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    reply_to_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    reply_to_sender: Mapped[str | None] = mapped_column(String(64), nullable=True)
