import pytest
import pytest_asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from murmur.adapters.api.dao import AbstractTransport
from murmur.adapters.database.dao import AccountDAO, CommonDAO, ConversationDAO, FriendDAO, MessageDAO
from murmur.adapters.database.engine import create_engine, create_sessionmaker
from murmur.adapters.database.migrations import run_migrations
from murmur.adapters.database.service import AccountService, FriendService, MessageStoreService
from murmur.adapters.encryption.dao import AES256GCMCipher, CryptographyKDF, Pbkdf2Params, X25519KeyAgreement
from murmur.adapters.encryption.service import EncryptionService, KeyManager
from murmur.exceptions import NetworkError
from murmur.services.call import CallSession
from murmur.services.clock import ClockService
from murmur.services.messenger import MessengerService, make_signal_sender
from murmur.state import SessionState

IN_MEMORY_URL = "sqlite+aiosqlite://"
FAST_KDF = Pbkdf2Params(iterations=1000)
START_MS = 1_700_000_000_000


@pytest.fixture(autouse=True)
def setup_logging():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        force=True,
        style="%"
    )


class ManualClock:
    """Local clock the test moves by hand"""

    def __init__(self, now_ms: int = START_MS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class RecordingTransport(AbstractTransport):
    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.fail = False
        # runs while send is in flight, before the outcome is known
        self.on_send: Callable[[dict[str, Any]], Awaitable[None]] | None = None

    async def send(self, event: dict[str, Any]) -> None:
        if self.on_send is not None:
            await self.on_send(event)
        if self.fail:
            raise NetworkError("relay unreachable", context={"event_type": event.get("type")})
        self.sent.append(event)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for event in self.sent if event["type"] == event_type]

    def drain(self) -> list[dict[str, Any]]:
        events, self.sent = self.sent, []
        return events


@dataclass
class Actor:
    """One fully wired client: its own store, session state, clock and outbox"""
    session: AsyncSession
    state: SessionState
    local_clock: ManualClock
    clock: ClockService
    transport: RecordingTransport
    encryption: EncryptionService
    accounts: AccountService
    friends: FriendService
    store: MessageStoreService
    calls: CallSession
    messenger: MessengerService


def build_actor(session: AsyncSession, call_timeout: float = 30.0) -> Actor:
    state = SessionState()
    local_clock = ManualClock()
    clock = ClockService(local_clock=local_clock)
    transport = RecordingTransport()
    common_dao = CommonDAO(session=session)

    encryption = EncryptionService(aes_cipher=AES256GCMCipher(), key_agreement=X25519KeyAgreement())
    accounts = AccountService(
        account_dao=AccountDAO(session=session),
        common_dao=common_dao,
        key_manager=KeyManager(kdf=CryptographyKDF()),
        encryption_service=encryption,
        clock=clock,
        state=state,
        default_kdf_params=FAST_KDF,
    )
    friends = FriendService(
        friend_dao=FriendDAO(session=session),
        common_dao=common_dao,
        account_service=accounts,
        encryption_service=encryption,
        state=state,
    )
    store = MessageStoreService(
        message_dao=MessageDAO(session=session),
        conversation_dao=ConversationDAO(session=session),
        common_dao=common_dao,
        friend_service=friends,
        encryption_service=encryption,
        clock=clock,
        state=state,
    )
    calls = CallSession(send_signal=make_signal_sender(transport, state), clock=clock, timeout=call_timeout)
    messenger = MessengerService(
        account_service=accounts,
        friend_service=friends,
        message_store=store,
        encryption_service=encryption,
        clock=clock,
        call_session=calls,
        transport=transport,
        state=state,
    )
    return Actor(
        session=session,
        state=state,
        local_clock=local_clock,
        clock=clock,
        transport=transport,
        encryption=encryption,
        accounts=accounts,
        friends=friends,
        store=store,
        calls=calls,
        messenger=messenger,
    )


async def make_engine():
    engine = create_engine(IN_MEMORY_URL)
    await run_migrations(engine)
    return engine


@pytest_asyncio.fixture
async def engine():
    engine = await make_engine()
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    async with create_sessionmaker(engine)() as session:
        yield session


@pytest_asyncio.fixture
async def actor(session) -> Actor:
    return build_actor(session)


@pytest_asyncio.fixture
async def alice(actor) -> Actor:
    """Actor with an unlocked account"""
    await actor.accounts.create_account("alice", "alice-password")
    return actor


@pytest_asyncio.fixture
async def pair():
    """Two unlocked actors on separate stores, not yet friends"""
    engines = [await make_engine(), await make_engine()]
    sessions = [create_sessionmaker(engine)() for engine in engines]
    actors = [build_actor(session) for session in sessions]
    await actors[0].accounts.create_account("alice", "alice-password")
    await actors[1].accounts.create_account("bob", "bob-password")
    try:
        yield actors[0], actors[1]
    finally:
        for session in sessions:
            await session.close()
        for engine in engines:
            await engine.dispose()


async def relay(source: Actor, target: Actor) -> list[Any]:
    """Deliver everything source has sent to target, returns the handler results"""
    results = []
    for event in source.transport.drain():
        if event.get("to_id") == target.state.account_id:
            results.append(await target.messenger.handle_event(event))
    return results


async def make_friends(first: Actor, second: Actor) -> None:
    await first.messenger.request_friend(second.state.account_id, "peer")
    await relay(first, second)
    await second.messenger.accept_friend(first.state.account_id)
    await relay(second, first)
