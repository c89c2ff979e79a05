from .encryption import EncryptionService
from .key_manager import KeyManager
