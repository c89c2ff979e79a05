import logging
import uuid

from murmur.adapters.database.dao.account import AbstractAccountDAO
from murmur.adapters.database.dao.common import AbstractCommonDAO
from murmur.adapters.database.dto import UserAccountDTO, UserAccountRequestDTO, UpdateKeyPairRequestDTO
from murmur.adapters.encryption.dao import KdfParams, Pbkdf2Params, kdf_params_adapter
from murmur.adapters.encryption.service import EncryptionService, KeyManager
from murmur.exceptions import AccountExistsError, AccountNotFoundError, SessionLockedError, ValidationError
from murmur.services.clock import ClockService
from murmur.state import SessionState


class AccountService:
    """
    Key & account lifecycle: one local account per store, a password-derived session
    key that only ever lives in SessionState, and an X25519 key pair that can be rotated.
    """

    def __init__(
            self,
            account_dao: AbstractAccountDAO,
            common_dao: AbstractCommonDAO,
            key_manager: KeyManager,
            encryption_service: EncryptionService,
            clock: ClockService,
            state: SessionState,
            default_kdf_params: KdfParams | None = None,
            logger: logging.Logger | None = None
    ):
        self._account_dao = account_dao
        self._common_dao = common_dao
        self._key_manager = key_manager
        self._encryption_service = encryption_service
        self._clock = clock
        self._state = state
        self._default_kdf_params = default_kdf_params or Pbkdf2Params()
        self._logger = logger or logging.getLogger(__name__)

    @property
    def is_unlocked(self) -> bool:
        return self._state.is_unlocked

    async def create_account(
            self,
            username: str,
            password: str,
            kdf_params: KdfParams | None = None
    ) -> UserAccountDTO:
        if not username or not username.strip():
            raise ValidationError("Username cannot be empty", field="username")
        if not password:
            raise ValidationError("Password cannot be empty", field="password")

        if await self._account_dao.count_accounts():
            raise AccountExistsError("Local account already exists", context={"username": username})

        params = kdf_params or self._default_kdf_params
        salt = self._key_manager.generate_salt()
        session_key = await self._key_manager.derive_session_key(password, salt, params)

        private_key, public_key = await self._encryption_service.generate_key_pair()
        wrapped_private_key = await self._key_manager.wrap_private_key(private_key, session_key)

        try:
            account = await self._account_dao.add_account(
                UserAccountRequestDTO(
                    id=str(uuid.uuid4()),
                    username=username.strip(),
                    salt=salt,
                    kdf_params=kdf_params_adapter.dump_json(params).decode(),
                    public_key=public_key,
                    encrypted_private_key=wrapped_private_key,
                    verification_tag=self._key_manager.make_verification_tag(session_key),
                    created_at=self._clock.now_ms(),
                )
            )
            await self._common_dao.commit()
        except Exception:
            await self._common_dao.rollback()
            raise

        self._state.update_from_unlock(
            account_id=account.id,
            username=account.username,
            session_key=session_key,
            private_key=private_key,
            public_key=public_key,
        )
        self._logger.info(
            f"Account created for {account.username}",
            extra={"context": {"account_id": account.id, "kdf": params.algorithm}}
        )
        return account

    async def unlock_account(self, password: str) -> bytes:
        """
        Re-derives the session key from the stored salt/params and checks it against the verification tag.
        :return: session key (kept in volatile state only)
        """
        account = await self.get_account()
        params = kdf_params_adapter.validate_json(account.kdf_params)

        session_key = await self._key_manager.derive_session_key(password, account.salt, params)
        self._key_manager.check_verification_tag(session_key, account.verification_tag)
        private_key = await self._key_manager.unwrap_private_key(account.encrypted_private_key, session_key)

        self._state.update_from_unlock(
            account_id=account.id,
            username=account.username,
            session_key=session_key,
            private_key=private_key,
            public_key=account.public_key,
        )
        self._logger.info("Account unlocked", extra={"context": {"account_id": account.id}})
        return session_key

    def lock(self) -> None:
        self._state.clear()
        self._logger.info("Account locked")

    async def rotate_key_pair(self) -> str:
        """
        Generates and persists a new key pair.
        Every cached shared secret becomes stale (the key epoch moves), so peers must be sent the new key.
        :return: new public key PEM
        """
        if not self._state.is_unlocked:
            raise SessionLockedError("Unlock the account before rotating keys")

        account = await self.get_account()
        private_key, public_key = await self._encryption_service.generate_key_pair()
        wrapped_private_key = await self._key_manager.wrap_private_key(private_key, self._state.session_key)

        try:
            await self._account_dao.update_key_pair(
                UpdateKeyPairRequestDTO(
                    id=account.id,
                    public_key=public_key,
                    encrypted_private_key=wrapped_private_key
                )
            )
            await self._common_dao.commit()
        except Exception:
            await self._common_dao.rollback()
            raise

        self._state.update_key_pair(private_key=private_key, public_key=public_key)
        self._state.shared_secrets.clear()
        self._logger.info(
            "Key pair rotated, shared secrets invalidated",
            extra={"context": {
                "account_id": account.id,
                "key_epoch": self._state.key_epoch,
                "key_fingerprint": self._encryption_service.fingerprint(public_key)
            }}
        )
        return public_key

    async def get_account(self) -> UserAccountDTO:
        account = await self._account_dao.get_account()
        if account is None:
            raise AccountNotFoundError("No local account registered")
        return account

    def private_key(self) -> str:
        if not self._state.is_unlocked:
            raise SessionLockedError("Account is locked")
        return self._state.private_key

    def public_key(self) -> str:
        if not self._state.public_key:
            raise SessionLockedError("Account is locked")
        return self._state.public_key

    @property
    def account_id(self) -> str:
        if not self._state.account_id:
            raise SessionLockedError("Account is locked")
        return self._state.account_id
