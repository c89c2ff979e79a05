import asyncio
from abc import ABC, abstractmethod
from typing import Annotated, Literal, Union

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from pydantic import BaseModel, Field, TypeAdapter

from murmur.exceptions import CryptographyError


class Pbkdf2Params(BaseModel):
    algorithm: Literal["pbkdf2-sha512"] = "pbkdf2-sha512"
    iterations: int = Field(default=100000, ge=1)
    length: int = 32


class ScryptParams(BaseModel):
    algorithm: Literal["scrypt"] = "scrypt"
    n: int = Field(default=2 ** 15, ge=2)
    r: int = Field(default=8, ge=1)
    p: int = Field(default=1, ge=1)
    length: int = 32


KdfParams = Annotated[Union[Pbkdf2Params, ScryptParams], Field(discriminator="algorithm")]

kdf_params_adapter = TypeAdapter(KdfParams)


class AbstractKDF(ABC):
    @abstractmethod
    async def derive(self, password: str, salt: bytes, params: KdfParams) -> bytes:
        """
        Derives a key from the password. Slow, never call it on the event loop thread.
        :param password:
        :param salt: random per-account salt
        :param params: tagged algorithm parameters
        :return: derived key (params.length bytes)
        """
        raise NotImplementedError()


class CryptographyKDF(AbstractKDF):
    async def derive(self, password: str, salt: bytes, params: KdfParams) -> bytes:
        if not password:
            raise ValueError("Password cannot be empty")
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._derive, password, salt, params)
        except (ValueError, TypeError):
            raise
        except Exception as e:
            raise CryptographyError(
                "Key derivation failed",
                original_error=e,
                context={"algorithm": params.algorithm}
            ) from e

    def _derive(self, password: str, salt: bytes, params: KdfParams) -> bytes:
        if isinstance(params, Pbkdf2Params):
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA512(),
                length=params.length,
                salt=salt,
                iterations=params.iterations,
                backend=default_backend()
            )
        elif isinstance(params, ScryptParams):
            kdf = Scrypt(
                salt=salt,
                length=params.length,
                n=params.n,
                r=params.r,
                p=params.p,
                backend=default_backend()
            )
        else:
            raise TypeError(f"Unsupported KDF params: {type(params).__name__}")
        return kdf.derive(password.encode("utf-8"))
