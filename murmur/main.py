import asyncio
import getpass
import logging

from dishka import AsyncContainer, make_async_container

from murmur.adapters.api.dao import TimeHTTPDAO, WebSocketDAO
from murmur.adapters.database.service import AccountService
from murmur.config import AppConfig
from murmur.exceptions import AccountNotFoundError, RetryableError, APIError
from murmur.providers import AppProvider
from murmur.services.clock import ClockService
from murmur.services.messenger import MessengerService


async def open_account(container: AsyncContainer) -> str:
    async with container() as request:
        account_service = await request.get(AccountService)
        try:
            await account_service.get_account()
        except AccountNotFoundError:
            username = input("Username: ")
            await account_service.create_account(username, getpass.getpass("New password: "))
        else:
            await account_service.unlock_account(getpass.getpass("Password: "))
        return account_service.account_id


async def sync_clock(container: AsyncContainer, logger: logging.Logger) -> None:
    clock = await container.get(ClockService)
    async with container() as request:
        time_dao = await request.get(TimeHTTPDAO)
        try:
            offset = await clock.sync(time_dao)
            logger.info(f"Clock anchored to relay time, offset {offset}ms")
        except (RetryableError, APIError) as e:
            logger.warning(f"Clock sync skipped, using local time: {e}")


async def main():
    config = AppConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s"
    )
    logger = logging.getLogger("murmur")

    container = make_async_container(AppProvider(config=config, logger=logger))
    try:
        account_id = await open_account(container)
        await sync_clock(container, logger)

        websocket = await container.get(WebSocketDAO)
        await websocket.connect(account_id)

        async def on_frame(frame: str) -> None:
            async with container() as request:
                messenger = await request.get(MessengerService)
                await messenger.on_frame(frame)

        await websocket.listen(on_frame)
    finally:
        await container.close()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
