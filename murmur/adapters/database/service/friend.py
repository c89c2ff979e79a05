import logging

from murmur.adapters.database.dao.common import AbstractCommonDAO
from murmur.adapters.database.dao.friend import AbstractFriendDAO
from murmur.adapters.database.dto import FriendDTO, FriendRequestDTO, FriendState, UpdateFriendRequestDTO
from murmur.adapters.encryption.service import EncryptionService
from murmur.exceptions import (
    BlockedSenderError,
    FriendNotFoundError,
    MissingPeerKeyError,
    NotPendingError,
)
from murmur.state import SessionState

from .account import AccountService


class FriendService:
    def __init__(
            self,
            friend_dao: AbstractFriendDAO,
            common_dao: AbstractCommonDAO,
            account_service: AccountService,
            encryption_service: EncryptionService,
            state: SessionState,
            logger: logging.Logger | None = None
    ):
        self._friend_dao = friend_dao
        self._common_dao = common_dao
        self._account_service = account_service
        self._encryption_service = encryption_service
        self._state = state
        self._logger = logger or logging.getLogger(__name__)

    async def _commit(self) -> None:
        try:
            await self._common_dao.commit()
        except Exception:
            await self._common_dao.rollback()
            raise

    async def get_friend(self, peer_id: str) -> FriendDTO | None:
        return await self._friend_dao.get_friend(peer_id)

    async def list_friends(self, state: FriendState | None = None) -> list[FriendDTO]:
        return await self._friend_dao.get_friends(state)

    async def is_blocked(self, peer_id: str) -> bool:
        friend = await self._friend_dao.get_friend(peer_id)
        return bool(friend and friend.is_blocked)

    async def _require(self, peer_id: str) -> FriendDTO:
        friend = await self._friend_dao.get_friend(peer_id)
        if friend is None:
            raise FriendNotFoundError(f"Unknown peer {peer_id}", context={"peer_id": peer_id})
        return friend

    async def _become_friends(self, friend: FriendDTO, public_key: str | None) -> FriendDTO:
        public_key = public_key or friend.public_key
        if not public_key:
            raise MissingPeerKeyError(
                f"Peer {friend.uuid} has no public key on record",
                context={"peer_id": friend.uuid}
            )
        updated = await self._friend_dao.update_friend(
            UpdateFriendRequestDTO(uuid=friend.uuid, state=FriendState.FRIEND, public_key=public_key)
        )
        await self._commit()
        self._logger.info(f"Peer {friend.uuid} is now a friend")
        return updated

    async def request_friend(self, peer_id: str, username: str | None = None) -> FriendDTO:
        """Outgoing request. Repeated calls are no-ops; a pending incoming request counts as mutual acceptance."""
        friend = await self._friend_dao.get_friend(peer_id)

        if friend is None:
            created = await self._friend_dao.add_friend(
                FriendRequestDTO(
                    uuid=peer_id,
                    username=username or peer_id,
                    state=FriendState.PENDING_OUTGOING,
                )
            )
            await self._commit()
            self._logger.info(f"Friend request sent to {peer_id}")
            return created

        if friend.state == FriendState.PENDING_INCOMING:
            if friend.is_blocked:
                raise BlockedSenderError(f"Peer {peer_id} is blocked", context={"peer_id": peer_id})
            return await self._become_friends(friend, None)

        return friend

    async def receive_friend_request(
            self,
            peer_id: str,
            peer_public_key: str,
            username: str | None = None
    ) -> FriendDTO:
        friend = await self._friend_dao.get_friend(peer_id)

        if friend is not None and friend.is_blocked:
            raise BlockedSenderError(f"Friend request from blocked peer {peer_id}", context={"peer_id": peer_id})

        if friend is None:
            created = await self._friend_dao.add_friend(
                FriendRequestDTO(
                    uuid=peer_id,
                    username=username or peer_id,
                    state=FriendState.PENDING_INCOMING,
                    public_key=peer_public_key,
                )
            )
            await self._commit()
            self._logger.info(f"Friend request received from {peer_id}")
            return created

        if friend.state == FriendState.PENDING_OUTGOING:
            return await self._become_friends(friend, peer_public_key)

        return await self._refresh_public_key(friend, peer_public_key)

    async def receive_friend_accept(self, peer_id: str, peer_public_key: str) -> FriendDTO:
        friend = await self._require(peer_id)

        if friend.is_blocked:
            raise BlockedSenderError(f"Acceptance from blocked peer {peer_id}", context={"peer_id": peer_id})

        if friend.state == FriendState.FRIEND:
            return await self._refresh_public_key(friend, peer_public_key)

        if friend.state != FriendState.PENDING_OUTGOING:
            raise NotPendingError(
                f"No outgoing request pending for {peer_id}",
                context={"peer_id": peer_id, "state": friend.state}
            )
        return await self._become_friends(friend, peer_public_key)

    async def accept_friend(self, peer_id: str) -> FriendDTO:
        friend = await self._require(peer_id)

        if friend.state != FriendState.PENDING_INCOMING:
            raise NotPendingError(
                f"No incoming request pending for {peer_id}",
                context={"peer_id": peer_id, "state": friend.state}
            )
        if friend.is_blocked:
            raise BlockedSenderError(f"Peer {peer_id} is blocked", context={"peer_id": peer_id})

        return await self._become_friends(friend, None)

    async def _refresh_public_key(self, friend: FriendDTO, public_key: str | None) -> FriendDTO:
        if not public_key or public_key == friend.public_key:
            return friend
        updated = await self._friend_dao.update_friend(
            UpdateFriendRequestDTO(uuid=friend.uuid, public_key=public_key)
        )
        await self._commit()
        self._state.shared_secrets.pop(friend.uuid, None)
        self._logger.info(f"Public key of {friend.uuid} updated, cached secret dropped")
        return updated

    async def block_friend(self, peer_id: str) -> FriendDTO:
        await self._require(peer_id)
        updated = await self._friend_dao.update_friend(UpdateFriendRequestDTO(uuid=peer_id, is_blocked=True))
        await self._commit()
        self._logger.info(f"Peer {peer_id} blocked")
        return updated

    async def unblock_friend(self, peer_id: str) -> FriendDTO:
        await self._require(peer_id)
        updated = await self._friend_dao.update_friend(UpdateFriendRequestDTO(uuid=peer_id, is_blocked=False))
        await self._commit()
        self._logger.info(f"Peer {peer_id} unblocked")
        return updated

    async def remove_friend(self, peer_id: str) -> bool:
        removed = await self._friend_dao.delete_friend(peer_id)
        await self._commit()
        self._state.shared_secrets.pop(peer_id, None)
        return removed

    async def record_presence(self, peer_id: str, online: bool, public_key: str | None = None) -> FriendDTO | None:
        """Remembers the peer's online state; a carried public key refreshes a known, unblocked peer"""
        self._state.presence[peer_id] = online
        friend = await self._friend_dao.get_friend(peer_id)
        if friend is None or friend.is_blocked:
            return friend
        return await self._refresh_public_key(friend, public_key)

    def is_online(self, peer_id: str) -> bool:
        return self._state.presence.get(peer_id, False)

    def invalidate_secrets(self) -> None:
        self._state.shared_secrets.clear()

    async def derived_secret_for(self, peer_id: str) -> bytes:
        """Shared secret from our private key and the peer's stored public key, cached per key epoch"""
        friend = await self._friend_dao.get_friend(peer_id)
        if friend is None or not friend.public_key:
            raise MissingPeerKeyError(
                f"No public key on record for {peer_id}",
                context={"peer_id": peer_id}
            )

        cached = self._state.shared_secrets.get(peer_id)
        if cached is not None:
            cached_key, cached_epoch, secret = cached
            if cached_key == friend.public_key and cached_epoch == self._state.key_epoch:
                return secret

        secret = await self._encryption_service.derive_shared_key(
            private_key_pem=self._account_service.private_key(),
            peer_public_key_pem=friend.public_key
        )
        self._state.shared_secrets[peer_id] = (friend.public_key, self._state.key_epoch, secret)
        return secret
