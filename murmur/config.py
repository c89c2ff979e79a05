"""Runtime configuration for the murmur client.

Every field can be overridden with an environment variable named
``MURMUR_<FIELD>`` (for example ``MURMUR_DATABASE_URL``), which is how the
test suite and packaged builds point the client at a different store.
"""

import os
from dataclasses import dataclass, fields

from murmur.adapters.encryption.dao.kdf import KdfParams, Pbkdf2Params, ScryptParams

ENV_PREFIX = "MURMUR_"


@dataclass
class AppConfig:
    database_url: str = "sqlite+aiosqlite:///murmur.db"

    kdf_algorithm: str = "pbkdf2-sha512"
    kdf_iterations: int = 100000
    scrypt_n: int = 2 ** 15
    scrypt_r: int = 8
    scrypt_p: int = 1

    drift_threshold_ms: int = 5000
    call_timeout: float = 30.0

    base_url: str = "https://localhost:8000"
    base_ws_url: str = "wss://localhost:8000"
    verify_ssl: bool = True
    http_timeout: float = 60.0
    http_max_retries: int = 3
    http_retry_delay: float = 1.0

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "AppConfig":
        environ = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            overrides[f.name] = _coerce(raw, f.type)
        return cls(**overrides)

    def kdf_params(self) -> KdfParams:
        if self.kdf_algorithm == "pbkdf2-sha512":
            return Pbkdf2Params(iterations=self.kdf_iterations)
        if self.kdf_algorithm == "scrypt":
            return ScryptParams(n=self.scrypt_n, r=self.scrypt_r, p=self.scrypt_p)
        raise ValueError(f"Unsupported KDF algorithm: {self.kdf_algorithm}")


def _coerce(raw: str, annotation):
    kind = annotation if isinstance(annotation, str) else getattr(annotation, "__name__", "str")
    if kind == "bool":
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if kind == "int":
        return int(raw)
    if kind == "float":
        return float(raw)
    return raw
