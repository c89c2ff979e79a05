import os
import asyncio
import logging

from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.backends import default_backend
from cryptography.exceptions import InvalidSignature, InvalidTag

from murmur.adapters.encryption.dao import AbstractKDF, KdfParams
from murmur.exceptions import InvalidCredentialsError, CryptographyError

SALT_SIZE = 16
VERIFICATION_LABEL = b"murmur_account_verification_v1"


class KeyManager:
    """
    Owns everything derived from the account password.

    The derived key itself never leaves this class in persisted form: the store only
    keeps the salt, the KDF parameters, an HMAC verification tag and the private key
    wrapped under the derived key.
    """

    def __init__(self, kdf: AbstractKDF, logger: logging.Logger | None = None):
        self._kdf = kdf
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def generate_salt() -> bytes:
        return os.urandom(SALT_SIZE)

    async def derive_session_key(self, password: str, salt: bytes, params: KdfParams) -> bytes:
        """Run the (slow) KDF collaborator"""
        self.logger.debug("Deriving session key", extra={"context": {"algorithm": params.algorithm}})
        return await self._kdf.derive(password, salt, params)

    @staticmethod
    def make_verification_tag(session_key: bytes) -> bytes:
        h = hmac.HMAC(session_key, hashes.SHA256(), backend=default_backend())
        h.update(VERIFICATION_LABEL)
        return h.finalize()

    @staticmethod
    def check_verification_tag(session_key: bytes, tag: bytes) -> None:
        """Constant-time comparison of the stored tag against one recomputed from the session key"""
        h = hmac.HMAC(session_key, hashes.SHA256(), backend=default_backend())
        h.update(VERIFICATION_LABEL)
        try:
            h.verify(tag)
        except InvalidSignature as e:
            raise InvalidCredentialsError("Invalid password") from e

    async def wrap_private_key(self, private_key_pem: str, session_key: bytes) -> bytes:
        """Encrypt the private key PEM using AES-GCM with the session key"""
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(
                None, self._wrap, private_key_pem.encode("utf-8"), session_key
            )
        except Exception as e:
            raise CryptographyError("Failed to wrap private key", original_error=e) from e

    def _wrap(self, data: bytes, session_key: bytes) -> bytes:
        if len(session_key) != 32:
            raise ValueError("Session key must be 32 bytes")

        nonce = os.urandom(12)
        cipher = Cipher(
            algorithms.AES(session_key),
            modes.GCM(nonce),
            backend=default_backend()
        )
        encryptor = cipher.encryptor()
        ciphertext = encryptor.update(data) + encryptor.finalize()
        return nonce + encryptor.tag + ciphertext

    async def unwrap_private_key(self, wrapped: bytes, session_key: bytes) -> str:
        """Decrypt the private key PEM, InvalidCredentialsError if the key does not authenticate"""
        try:
            loop = asyncio.get_running_loop()
            data = await loop.run_in_executor(None, self._unwrap, wrapped, session_key)
        except InvalidTag as e:
            raise InvalidCredentialsError("Invalid password or corrupted key material") from e
        except ValueError as e:
            raise CryptographyError("Failed to unwrap private key", original_error=e) from e
        return data.decode("utf-8")

    def _unwrap(self, wrapped: bytes, session_key: bytes) -> bytes:
        if len(wrapped) < 28:  # 12 (nonce) + 16 (tag)
            raise ValueError("Invalid wrapped key")

        nonce = wrapped[:12]
        tag = wrapped[12:28]
        ciphertext = wrapped[28:]

        cipher = Cipher(
            algorithms.AES(session_key),
            modes.GCM(nonce, tag),
            backend=default_backend()
        )
        decryptor = cipher.decryptor()
        return decryptor.update(ciphertext) + decryptor.finalize()
