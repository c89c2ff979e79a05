from abc import ABC, abstractmethod
from typing import TypeVar, Callable, Awaitable
from functools import wraps

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from murmur.exceptions import BaseAppError, DatabaseError

T = TypeVar('T')

class AbstractCommonDAO(ABC):
    @abstractmethod
    async def flush(self) -> None:
        raise NotImplementedError()

    @abstractmethod
    async def commit(self):
        raise NotImplementedError()

    @abstractmethod
    async def rollback(self):
        raise NotImplementedError()

class CommonDAO(AbstractCommonDAO):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def flush(self) -> None:
        await self._session.flush()

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()


def error_handler(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Flushes after a successful DAO call and maps driver/mapping failures to DatabaseError"""
    @wraps(func)
    async def wrapper(self, *args, **kwargs) -> T:
        try:
            result = await func(self, *args, **kwargs)
            await self._session.flush()
            return result
        except BaseAppError:
            raise
        except PydanticValidationError as e:
            raise DatabaseError(
                f"Validation/Data mapping error in database in method: {func.__name__}",
                original_error=e
            ) from e
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"SQLAlchemy error in database in method: {func.__name__}",
                original_error=e
            ) from e
    return wrapper
