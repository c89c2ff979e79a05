import logging

from murmur.adapters.encryption.dao import Abstract256Cipher, AbstractKeyAgreement, public_key_fingerprint
from murmur.exceptions import *

class EncryptionService:
    def __init__(
            self,
            aes_cipher: Abstract256Cipher,
            key_agreement: AbstractKeyAgreement,
            logger: logging.Logger | None = None
    ):
        self._aes_cipher = aes_cipher
        self._key_agreement = key_agreement
        self._logger = logger or logging.getLogger(__name__)

    async def encrypt_message(self, message: str, shared_key: bytes) -> bytes:
        """
        Encrypts a chat message for exactly one peer.
        :param message: plaintext
        :param shared_key: secret derived from our private key and the peer's public key
        :return: raw payload (nonce + ciphertext + tag), sent and stored as is
        """
        try:
            payload = await self._aes_cipher.encrypt(plaintext=message, key=shared_key)
            self._logger.debug(
                "Message encryption successful",
                extra={"context": {"encrypted_size": len(payload)}}
            )
            return payload

        except (InvalidKeyError, CryptographyError):
            raise

        except Exception as e:
            self._logger.error(
                "Unexpected error during encryption in service layer",
                extra={"context": {"error_type": e.__class__.__name__}},
                exc_info=True
            )
            raise InfrastructureError(
                "Message encryption failed due to technical issue",
                original_error=e
            ) from e

    async def decrypt_message(self, payload: bytes, shared_key: bytes) -> str:
        """
        Decrypts a raw payload, DecryptionError if it does not authenticate under shared_key.
        """
        try:
            return await self._aes_cipher.decrypt(payload=payload, key=shared_key)

        except (InvalidKeyError, CryptographyError):
            raise

        except Exception as e:
            self._logger.error(
                "Unexpected error during decryption in service layer",
                extra={"context": {"error_type": e.__class__.__name__}},
                exc_info=True
            )
            raise InfrastructureError(
                "Message decryption failed due to technical issue",
                original_error=e,
                context={"operation": "e2ee_decryption"}
            ) from e

    async def generate_key_pair(self) -> tuple[str, str]:
        """
        Generates a new X25519 key pair.
        :return: (private_key_pem, public_key_pem)
        """
        private_pem, public_pem = await self._key_agreement.generate_key_pair()
        self._logger.info(
            "Generated new key pair",
            extra={"context": {"key_fingerprint": self.fingerprint(public_pem)}}
        )
        return private_pem, public_pem

    async def derive_shared_key(self, private_key_pem: str, peer_public_key_pem: str) -> bytes:
        return await self._key_agreement.derive_shared_key(
            private_key_pem=private_key_pem,
            peer_public_key_pem=peer_public_key_pem
        )

    @staticmethod
    def fingerprint(public_key_pem: str | None) -> str:
        if not public_key_pem:
            return ""
        return public_key_fingerprint(public_key_pem)
