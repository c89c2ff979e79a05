import os
import pytest

from murmur.adapters.encryption.dao import (
    AES256GCMCipher,
    CryptographyKDF,
    Pbkdf2Params,
    ScryptParams,
    X25519KeyAgreement,
    kdf_params_adapter,
)
from murmur.adapters.encryption.service import EncryptionService, KeyManager
from murmur.exceptions import (
    DecryptionError,
    InvalidCiphertextError,
    InvalidCredentialsError,
    InvalidKeyError,
)


@pytest.fixture
def encryption_service():
    return EncryptionService(aes_cipher=AES256GCMCipher(), key_agreement=X25519KeyAgreement())


@pytest.fixture
def key_manager():
    return KeyManager(kdf=CryptographyKDF())


@pytest.mark.asyncio
async def test_kdf_is_deterministic_per_salt(key_manager):
    params = Pbkdf2Params(iterations=1000)
    salt = key_manager.generate_salt()

    first = await key_manager.derive_session_key("correct horse", salt, params)
    second = await key_manager.derive_session_key("correct horse", salt, params)
    other_salt = await key_manager.derive_session_key("correct horse", key_manager.generate_salt(), params)

    assert len(first) == 32
    assert first == second
    assert first != other_salt


@pytest.mark.asyncio
async def test_scrypt_params_survive_json(key_manager):
    params = ScryptParams(n=2 ** 10, r=8, p=1)
    stored = kdf_params_adapter.dump_json(params).decode()
    restored = kdf_params_adapter.validate_json(stored)

    assert isinstance(restored, ScryptParams)
    salt = os.urandom(16)
    assert await key_manager.derive_session_key("pw", salt, params) == \
        await key_manager.derive_session_key("pw", salt, restored)


@pytest.mark.asyncio
async def test_empty_password_is_rejected():
    with pytest.raises(ValueError):
        await CryptographyKDF().derive("", os.urandom(16), Pbkdf2Params(iterations=1000))


@pytest.mark.asyncio
async def test_verification_tag_rejects_wrong_key(key_manager):
    key = os.urandom(32)
    tag = key_manager.make_verification_tag(key)

    key_manager.check_verification_tag(key, tag)
    with pytest.raises(InvalidCredentialsError):
        key_manager.check_verification_tag(os.urandom(32), tag)


@pytest.mark.asyncio
async def test_private_key_wrapping(key_manager, encryption_service):
    private_pem, _ = await encryption_service.generate_key_pair()
    key = os.urandom(32)

    wrapped = await key_manager.wrap_private_key(private_pem, key)
    assert private_pem.encode() not in wrapped
    assert await key_manager.unwrap_private_key(wrapped, key) == private_pem

    with pytest.raises(InvalidCredentialsError):
        await key_manager.unwrap_private_key(wrapped, os.urandom(32))


@pytest.mark.asyncio
async def test_both_sides_derive_the_same_secret(encryption_service):
    alice_private, alice_public = await encryption_service.generate_key_pair()
    bob_private, bob_public = await encryption_service.generate_key_pair()

    alice_secret = await encryption_service.derive_shared_key(alice_private, bob_public)
    bob_secret = await encryption_service.derive_shared_key(bob_private, alice_public)

    assert alice_secret == bob_secret
    assert len(alice_secret) == 32


@pytest.mark.asyncio
async def test_message_decrypts_only_under_its_key(encryption_service):
    key = os.urandom(32)
    payload = await encryption_service.encrypt_message("hello there", key)

    assert await encryption_service.decrypt_message(payload, key) == "hello there"
    with pytest.raises(DecryptionError):
        await encryption_service.decrypt_message(payload, os.urandom(32))


@pytest.mark.asyncio
async def test_tampered_payload_fails_authentication(encryption_service):
    key = os.urandom(32)
    payload = bytearray(await encryption_service.encrypt_message("hello", key))
    payload[14] ^= 0x01

    with pytest.raises(DecryptionError):
        await encryption_service.decrypt_message(bytes(payload), key)


@pytest.mark.asyncio
async def test_short_payload_and_bad_key(encryption_service):
    with pytest.raises(InvalidCiphertextError):
        await encryption_service.decrypt_message(b"too short", os.urandom(32))
    with pytest.raises(InvalidKeyError):
        await encryption_service.encrypt_message("hello", b"short key")


@pytest.mark.asyncio
async def test_fingerprint_identifies_public_key(encryption_service):
    _, first = await encryption_service.generate_key_pair()
    _, second = await encryption_service.generate_key_pair()

    assert EncryptionService.fingerprint(first) == EncryptionService.fingerprint(first)
    assert EncryptionService.fingerprint(first) != EncryptionService.fingerprint(second)
    assert len(EncryptionService.fingerprint(first)) == 16
    assert EncryptionService.fingerprint(None) == ""


@pytest.mark.asyncio
async def test_unreadable_peer_key_is_rejected(encryption_service):
    private_pem, public_pem = await encryption_service.generate_key_pair()

    with pytest.raises(InvalidKeyError):
        await encryption_service.derive_shared_key(private_pem, "not a pem")
    with pytest.raises(InvalidKeyError):
        await encryption_service.derive_shared_key(private_pem, "")
    # a private key where a public one belongs
    with pytest.raises(InvalidKeyError):
        await encryption_service.derive_shared_key(public_pem, private_pem)
