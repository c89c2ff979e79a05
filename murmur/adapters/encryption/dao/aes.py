import os
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.backends import default_backend
from cryptography.exceptions import InvalidTag
from abc import ABC, abstractmethod
import asyncio

from murmur.exceptions import *

NONCE_SIZE = 12
TAG_SIZE = 16


class Abstract256Cipher(ABC):
    @abstractmethod
    async def encrypt(
            self,
            plaintext: str,
            key: bytes
    ) -> bytes:
        """
        Encrypts the plaintext using 256-bit cipher with the given key.
        :param plaintext:
        :param key: 256-bit key
        :return: raw payload, nonce + ciphertext + tag (stored as is for re-decryption)
        """
        raise NotImplementedError()

    @abstractmethod
    async def decrypt(
            self,
            payload: bytes,
            key: bytes
    ) -> str:
        """
        Decrypts the raw payload using 256-bit cipher with the given key.
        :param payload: nonce + ciphertext + tag
        :param key: 256-bit key
        :return: plaintext
        """
        raise NotImplementedError()


class AES256GCMCipher(Abstract256Cipher):
    async def encrypt(self, plaintext: str, key: bytes) -> bytes:
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(
                None, self._safe_encrypt, plaintext, key
            )
        except (InvalidKeyError, ValueError):
            raise
        except Exception as e:
            context = {"plaintext_length": len(plaintext), "key_length": len(key)}
            raise EncryptionError(
                "AES encryption failed, unexpected error",
                original_error=e,
                context=context
            ) from e

    def _safe_encrypt(self, plaintext: str, key: bytes) -> bytes:
        if len(key) != 32:
            raise InvalidKeyError(
                "AES key must be 32 bytes long",
                context={"key_length": len(key)}
            )

        nonce = os.urandom(NONCE_SIZE)
        cipher = Cipher(
            algorithms.AES(key),
            modes.GCM(nonce),
            backend=default_backend()
        )
        encryptor = cipher.encryptor()
        ciphertext = encryptor.update(plaintext.encode()) + encryptor.finalize()

        return nonce + ciphertext + encryptor.tag

    async def decrypt(self, payload: bytes, key: bytes) -> str:
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(
                None, self._safe_decrypt, payload, key
            )
        except (InvalidKeyError, DecryptionError, ValueError):
            raise
        except Exception as e:
            context = {
                "payload_length": len(payload) if payload else 0,
                "key_length": len(key)
            }
            raise DecryptionError(
                "AES decryption failed, unexpected error",
                original_error=e,
                context=context
            ) from e

    def _safe_decrypt(self, payload: bytes, key: bytes) -> str:
        if not payload or not isinstance(payload, (bytes, bytearray)):
            raise InvalidCiphertextError(
                "Invalid ciphertext: empty or wrong type",
                context={"payload_type": type(payload).__name__}
            )

        if len(payload) < NONCE_SIZE + TAG_SIZE:
            raise InvalidCiphertextError(
                f"Invalid ciphertext length: {len(payload)} bytes. "
                f"Minimum required: {NONCE_SIZE + TAG_SIZE} bytes",
                context={"payload_length": len(payload)}
            )

        if len(key) != 32:
            raise InvalidKeyError(
                "AES key must be 32 bytes long",
                context={"key_length": len(key)}
            )

        nonce = payload[:NONCE_SIZE]
        ciphertext_data = payload[NONCE_SIZE:-TAG_SIZE]
        tag = payload[-TAG_SIZE:]

        cipher = Cipher(
            algorithms.AES(key),
            modes.GCM(nonce, tag),
            backend=default_backend()
        )
        decryptor = cipher.decryptor()

        try:
            decrypted = decryptor.update(ciphertext_data) + decryptor.finalize()
        except InvalidTag as e:
            raise DecryptionError(
                "Authentication failed: invalid tag",
                original_error=e,
                context={"payload_length": len(payload)}
            ) from e

        try:
            return decrypted.decode()
        except UnicodeDecodeError as e:
            raise DecryptionError(
                "Decrypted payload is not valid UTF-8",
                original_error=e,
                context={"payload_length": len(payload)}
            ) from e
