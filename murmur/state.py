import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator


class KeyedLocks:
    """
    One asyncio.Lock per key (msg_id, conversation id).
    An entry lives only while some task holds or waits on it.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def __call__(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class SessionState:
    """
    Volatile, process-wide session state. Nothing here is ever persisted:
    the derived session key and the unwrapped private key live only in memory.
    """
    account_id: str | None = None
    username: str | None = None
    session_key: bytes | None = None
    private_key: str | None = None
    public_key: str | None = None
    key_epoch: int = 0

    focused_conversation_id: str | None = None

    # peer uuid -> (peer public key, key epoch, shared secret)
    shared_secrets: dict[str, tuple[str, int, bytes]] = field(default_factory=dict)
    # peer uuid -> online, as last reported by the relay
    presence: dict[str, bool] = field(default_factory=dict)

    message_locks: KeyedLocks = field(default_factory=KeyedLocks)
    conversation_locks: KeyedLocks = field(default_factory=KeyedLocks)

    @property
    def is_unlocked(self) -> bool:
        return self.session_key is not None and self.private_key is not None

    def update_from_unlock(
            self,
            account_id: str,
            username: str,
            session_key: bytes,
            private_key: str,
            public_key: str,
    ):
        self.account_id = account_id
        self.username = username
        self.session_key = session_key
        self.private_key = private_key
        self.public_key = public_key

    def update_key_pair(self, private_key: str, public_key: str):
        self.private_key = private_key
        self.public_key = public_key
        self.key_epoch += 1

    def clear(self):
        self.session_key = None
        self.private_key = None
        self.shared_secrets.clear()
