import asyncio
import hashlib
from abc import ABC, abstractmethod

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from murmur.exceptions import *

SHARED_KEY_SIZE = 32
# peers derive different keys unless both use this label
HKDF_INFO = b"murmur_x25519_shared_secret"


def load_private_key(private_key_pem: str) -> X25519PrivateKey:
    try:
        key = serialization.load_pem_private_key(private_key_pem.encode(), password=None)
    except (ValueError, TypeError, AttributeError) as e:
        raise InvalidKeyError("Private key is not a readable PEM", original_error=e) from e
    if not isinstance(key, X25519PrivateKey):
        raise InvalidKeyError("Private key is not an X25519 key", context={"key_type": type(key).__name__})
    return key


def load_public_key(public_key_pem: str) -> X25519PublicKey:
    try:
        key = serialization.load_pem_public_key(public_key_pem.encode())
    except (ValueError, TypeError, AttributeError) as e:
        raise InvalidKeyError("Peer public key is not a readable PEM", original_error=e) from e
    if not isinstance(key, X25519PublicKey):
        raise InvalidKeyError("Peer public key is not an X25519 key", context={"key_type": type(key).__name__})
    return key


def public_key_fingerprint(public_key_pem: str) -> str:
    """Short hex id of the raw 32 public key bytes, stable across PEM re-encodings"""
    raw = load_public_key(public_key_pem).public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
    return hashlib.sha256(raw).hexdigest()[:16]


class AbstractKeyAgreement(ABC):
    @abstractmethod
    async def generate_key_pair(self) -> tuple[str, str]:
        """:return: (private_key_pem, public_key_pem)"""
        raise NotImplementedError()

    @abstractmethod
    async def derive_shared_key(self, private_key_pem: str, peer_public_key_pem: str) -> bytes:
        raise NotImplementedError()


class X25519KeyAgreement(AbstractKeyAgreement):
    """
    Account key pairs and per-peer shared secrets.
    Keys travel and rest as PEM strings: PKCS8 for the private half (wrapped before it is stored),
    SubjectPublicKeyInfo for the public half carried in friend and key_update events.
    """

    async def _offload(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def generate_key_pair(self) -> tuple[str, str]:
        try:
            return await self._offload(self._generate_key_pair)
        except Exception as e:
            raise KeyGenerationError("Failed to generate X25519 key pair", original_error=e) from e

    async def derive_shared_key(self, private_key_pem: str, peer_public_key_pem: str) -> bytes:
        if not private_key_pem or not peer_public_key_pem:
            raise InvalidKeyError("Both key halves are required to derive a shared key")
        try:
            return await self._offload(self._derive_shared_key, private_key_pem, peer_public_key_pem)
        except InvalidKeyError:
            raise
        except Exception as e:
            raise CryptographyError("Failed to derive shared key", original_error=e) from e

    @staticmethod
    def _generate_key_pair() -> tuple[str, str]:
        private_key = X25519PrivateKey.generate()
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        )
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        )
        return private_pem.decode(), public_pem.decode()

    @staticmethod
    def _derive_shared_key(private_key_pem: str, peer_public_key_pem: str) -> bytes:
        shared = load_private_key(private_key_pem).exchange(load_public_key(peer_public_key_pem))
        return HKDF(
            algorithm=hashes.SHA512(),
            length=SHARED_KEY_SIZE,
            salt=None,
            info=HKDF_INFO,
        ).derive(shared)
