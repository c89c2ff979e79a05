import logging
import pytest
from dishka import make_async_container

from murmur.adapters.database.service import AccountService, FriendService, MessageStoreService
from murmur.config import AppConfig
from murmur.providers import AppProvider
from murmur.services.messenger import MessengerService
from murmur.state import SessionState

from conftest import IN_MEMORY_URL


def test_config_reads_environment():
    config = AppConfig.from_env({
        "MURMUR_DATABASE_URL": IN_MEMORY_URL,
        "MURMUR_KDF_ITERATIONS": "1000",
        "MURMUR_VERIFY_SSL": "false",
        "MURMUR_CALL_TIMEOUT": "2.5",
        "UNRELATED": "x",
    })
    assert config.database_url == IN_MEMORY_URL
    assert config.kdf_iterations == 1000
    assert config.verify_ssl is False
    assert config.call_timeout == 2.5
    assert config.kdf_params().iterations == 1000


def test_unknown_kdf_algorithm():
    with pytest.raises(ValueError):
        AppConfig(kdf_algorithm="md5").kdf_params()


@pytest.mark.asyncio
async def test_container_shares_session_state_across_requests():
    config = AppConfig(database_url=IN_MEMORY_URL, kdf_iterations=1000)
    container = make_async_container(AppProvider(config=config, logger=logging.getLogger("murmur.test")))

    try:
        async with container() as request:
            account_service = await request.get(AccountService)
            account = await account_service.create_account("alice", "pw")

        async with container() as request:
            friend_service = await request.get(FriendService)
            await friend_service.request_friend("bob")
            store = await request.get(MessageStoreService)
            assert await store.list_conversations() == []
            assert isinstance(await request.get(MessengerService), MessengerService)

        async with container() as request:
            friend_service = await request.get(FriendService)
            assert (await friend_service.get_friend("bob")).uuid == "bob"

        state = await container.get(SessionState)
        assert state.account_id == account.id
        assert state.is_unlocked
    finally:
        await container.close()
