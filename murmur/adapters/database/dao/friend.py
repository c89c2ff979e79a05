from abc import ABC, abstractmethod

from sqlalchemy import select, delete, insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from murmur.adapters.database.dto import FriendRequestDTO, FriendDTO, UpdateFriendRequestDTO, FriendState
from murmur.adapters.database.structures import Friend

from .common import error_handler

class AbstractFriendDAO(ABC):
    @abstractmethod
    async def add_friend(self, friend: FriendRequestDTO) -> FriendDTO:
        raise NotImplementedError()

    @abstractmethod
    async def get_friend(self, uuid: str) -> FriendDTO | None:
        raise NotImplementedError()

    @abstractmethod
    async def get_friends(self, state: FriendState | None = None) -> list[FriendDTO]:
        raise NotImplementedError()

    @abstractmethod
    async def update_friend(self, friend: UpdateFriendRequestDTO) -> FriendDTO | None:
        raise NotImplementedError()

    @abstractmethod
    async def delete_friend(self, uuid: str) -> bool:
        raise NotImplementedError()

class FriendDAO(AbstractFriendDAO):
    def __init__(self, session: AsyncSession):
        self._session = session

    @error_handler
    async def add_friend(self, friend: FriendRequestDTO) -> FriendDTO:
        stmt = (
            insert(Friend)
            .values(**friend.model_dump(mode="json"))
            .returning(Friend)
        )
        result = await self._session.scalar(stmt)
        return FriendDTO.model_validate(result, from_attributes=True)

    @error_handler
    async def get_friend(self, uuid: str) -> FriendDTO | None:
        result = await self._session.scalar(select(Friend).where(Friend.uuid == uuid))
        return FriendDTO.model_validate(result, from_attributes=True) if result else None

    @error_handler
    async def get_friends(self, state: FriendState | None = None) -> list[FriendDTO]:
        stmt = select(Friend).order_by(Friend.username)
        if state is not None:
            stmt = stmt.where(Friend.state == state)
        result = await self._session.scalars(stmt)
        return [FriendDTO.model_validate(friend, from_attributes=True) for friend in result]

    @error_handler
    async def update_friend(self, friend: UpdateFriendRequestDTO) -> FriendDTO | None:
        values = friend.model_dump(mode="json", exclude_unset=True, exclude={"uuid"})
        if not values:
            return await self.get_friend(friend.uuid)
        stmt = (
            update(Friend)
            .where(Friend.uuid == friend.uuid)
            .values(**values)
            .returning(Friend)
        )
        result = await self._session.scalar(stmt)
        return FriendDTO.model_validate(result, from_attributes=True) if result else None

    @error_handler
    async def delete_friend(self, uuid: str) -> bool:
        result = await self._session.execute(delete(Friend).where(Friend.uuid == uuid))
        return result.rowcount > 0
