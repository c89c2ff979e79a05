from abc import ABC, abstractmethod

from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError as SQLAlchemyIntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from murmur.adapters.database.dto import MessageRequestDTO, MessageDTO, MessageStatus
from murmur.adapters.database.structures import Message
from murmur.exceptions import DuplicateMessageError

from .common import error_handler

class AbstractMessageDAO(ABC):
    @abstractmethod
    async def add_message(self, message: MessageRequestDTO, conversation_id: str) -> MessageDTO:
        raise NotImplementedError()

    @abstractmethod
    async def get_message(self, msg_id: str, is_echo: bool | None = None) -> MessageDTO | None:
        raise NotImplementedError()

    @abstractmethod
    async def get_messages(self, conversation_id: str, limit: int | None = None) -> list[MessageDTO]:
        raise NotImplementedError()

    @abstractmethod
    async def update_status(self, message_id: int, status: MessageStatus) -> MessageDTO | None:
        raise NotImplementedError()

    @abstractmethod
    async def update_text(self, message_id: int, text: str) -> MessageDTO | None:
        raise NotImplementedError()

    @abstractmethod
    async def mark_delivered_as_read(self, conversation_id: str) -> list[str]:
        raise NotImplementedError()

class MessageDAO(AbstractMessageDAO):
    __slots__ = "_session"

    def __init__(self, session: AsyncSession):
        self._session = session

    @error_handler
    async def add_message(self, message: MessageRequestDTO, conversation_id: str) -> MessageDTO:
        reply = message.reply_to
        stmt = (
            insert(Message)
            .values(
                msg_id=message.msg_id,
                conversation_id=conversation_id,
                from_id=message.from_id,
                to_id=message.to_id,
                text=message.text,
                raw_payload=message.raw_payload,
                timestamp=message.timestamp,
                status=message.status.value,
                is_echo=message.is_echo,
                reply_to_id=reply.id if reply else None,
                reply_to_text=reply.text if reply else None,
                reply_to_sender=reply.sender if reply else None,
            )
            .returning(Message)
        )
        try:
            async with self._session.begin_nested():
                result = await self._session.scalar(stmt)
        except SQLAlchemyIntegrityError as e:
            raise DuplicateMessageError(
                f"Message {message.msg_id} already stored",
                context={"msg_id": message.msg_id, "is_echo": message.is_echo}
            ) from e
        return MessageDTO.model_validate(result, from_attributes=True)

    @error_handler
    async def get_message(self, msg_id: str, is_echo: bool | None = None) -> MessageDTO | None:
        """The authoritative (non-echo) record wins when is_echo is not given"""
        stmt = select(Message).where(Message.msg_id == msg_id)
        if is_echo is not None:
            stmt = stmt.where(Message.is_echo == is_echo)
        stmt = stmt.order_by(Message.is_echo.asc()).limit(1)
        result = await self._session.scalar(stmt)
        return MessageDTO.model_validate(result, from_attributes=True) if result else None

    @error_handler
    async def get_messages(self, conversation_id: str, limit: int | None = None) -> list[MessageDTO]:
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.timestamp.asc(), Message.id.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self._session.scalars(stmt)
        return [MessageDTO.model_validate(message, from_attributes=True) for message in result]

    @error_handler
    async def update_status(self, message_id: int, status: MessageStatus) -> MessageDTO | None:
        stmt = (
            update(Message)
            .where(Message.id == message_id)
            .values(status=status.value)
            .returning(Message)
        )
        result = await self._session.scalar(stmt)
        return MessageDTO.model_validate(result, from_attributes=True) if result else None

    @error_handler
    async def update_text(self, message_id: int, text: str) -> MessageDTO | None:
        stmt = (
            update(Message)
            .where(Message.id == message_id)
            .values(text=text)
            .returning(Message)
        )
        result = await self._session.scalar(stmt)
        return MessageDTO.model_validate(result, from_attributes=True) if result else None

    @error_handler
    async def mark_delivered_as_read(self, conversation_id: str) -> list[str]:
        stmt = (
            update(Message)
            .where(
                and_(
                    Message.conversation_id == conversation_id,
                    Message.status == MessageStatus.DELIVERED.value
                )
            )
            .values(status=MessageStatus.READ.value)
            .returning(Message.msg_id)
        )
        result = await self._session.scalars(stmt)
        return list(result)
