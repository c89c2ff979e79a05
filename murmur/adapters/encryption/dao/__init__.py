from .aes import Abstract256Cipher, AES256GCMCipher
from .ecdh import AbstractKeyAgreement, X25519KeyAgreement, public_key_fingerprint
from .kdf import AbstractKDF, CryptographyKDF, KdfParams, Pbkdf2Params, ScryptParams, kdf_params_adapter
