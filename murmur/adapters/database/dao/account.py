from abc import ABC, abstractmethod

from sqlalchemy import select, insert, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from murmur.adapters.database.dto import UserAccountRequestDTO, UserAccountDTO, UpdateKeyPairRequestDTO
from murmur.adapters.database.structures import Account
from murmur.exceptions import AccountExistsError

from .common import error_handler

class AbstractAccountDAO(ABC):
    @abstractmethod
    async def add_account(self, account: UserAccountRequestDTO) -> UserAccountDTO:
        raise NotImplementedError()

    @abstractmethod
    async def get_account(self) -> UserAccountDTO | None:
        raise NotImplementedError()

    @abstractmethod
    async def count_accounts(self) -> int:
        raise NotImplementedError()

    @abstractmethod
    async def update_key_pair(self, keys: UpdateKeyPairRequestDTO) -> UserAccountDTO | None:
        raise NotImplementedError()

class AccountDAO(AbstractAccountDAO):
    def __init__(self, session: AsyncSession):
        self._session = session

    @error_handler
    async def add_account(self, account: UserAccountRequestDTO) -> UserAccountDTO:
        if await self.count_accounts():
            raise AccountExistsError("Local account already exists")

        stmt = (
            insert(Account)
            .values(**account.model_dump())
            .returning(Account)
        )
        result = await self._session.scalar(stmt)
        return UserAccountDTO.model_validate(result, from_attributes=True)

    @error_handler
    async def get_account(self) -> UserAccountDTO | None:
        result = await self._session.scalar(select(Account).limit(1))
        return UserAccountDTO.model_validate(result, from_attributes=True) if result else None

    @error_handler
    async def count_accounts(self) -> int:
        return await self._session.scalar(select(func.count()).select_from(Account))

    @error_handler
    async def update_key_pair(self, keys: UpdateKeyPairRequestDTO) -> UserAccountDTO | None:
        # id and username are immutable, only key columns are written
        stmt = (
            update(Account)
            .where(Account.id == keys.id)
            .values(
                public_key=keys.public_key,
                encrypted_private_key=keys.encrypted_private_key
            )
            .returning(Account)
        )
        result = await self._session.scalar(stmt)
        return UserAccountDTO.model_validate(result, from_attributes=True) if result else None
