import json
from abc import ABC, abstractmethod

from sqlalchemy import select, insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from murmur.adapters.database.dto import ConversationRequestDTO, ConversationDTO, UpdateConversationRequestDTO
from murmur.adapters.database.structures import Conversation

from .common import error_handler

class AbstractConversationDAO(ABC):
    @abstractmethod
    async def add_conversation(self, conversation: ConversationRequestDTO) -> ConversationDTO:
        raise NotImplementedError()

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> ConversationDTO | None:
        raise NotImplementedError()

    @abstractmethod
    async def get_conversations(self) -> list[ConversationDTO]:
        raise NotImplementedError()

    @abstractmethod
    async def update_conversation(self, conversation: UpdateConversationRequestDTO) -> ConversationDTO | None:
        raise NotImplementedError()

class ConversationDAO(AbstractConversationDAO):
    def __init__(self, session: AsyncSession):
        self._session = session

    @error_handler
    async def add_conversation(self, conversation: ConversationRequestDTO) -> ConversationDTO:
        values = conversation.model_dump()
        values["participants"] = json.dumps(values["participants"]) if values["participants"] else None
        stmt = (
            insert(Conversation)
            .values(**values)
            .returning(Conversation)
        )
        result = await self._session.scalar(stmt)
        return ConversationDTO.model_validate(result, from_attributes=True)

    @error_handler
    async def get_conversation(self, conversation_id: str) -> ConversationDTO | None:
        result = await self._session.scalar(select(Conversation).where(Conversation.id == conversation_id))
        return ConversationDTO.model_validate(result, from_attributes=True) if result else None

    @error_handler
    async def get_conversations(self) -> list[ConversationDTO]:
        stmt = select(Conversation).order_by(Conversation.last_timestamp.desc())
        result = await self._session.scalars(stmt)
        return [ConversationDTO.model_validate(conversation, from_attributes=True) for conversation in result]

    @error_handler
    async def update_conversation(self, conversation: UpdateConversationRequestDTO) -> ConversationDTO | None:
        values = conversation.model_dump(exclude_unset=True, exclude={"id"})
        if not values:
            return await self.get_conversation(conversation.id)
        stmt = (
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .values(**values)
            .returning(Conversation)
        )
        result = await self._session.scalar(stmt)
        return ConversationDTO.model_validate(result, from_attributes=True) if result else None
