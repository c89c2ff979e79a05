import pytest

from murmur.adapters.encryption.dao import ScryptParams
from murmur.exceptions import (
    AccountExistsError,
    AccountNotFoundError,
    InvalidCredentialsError,
    SessionLockedError,
    ValidationError,
)


@pytest.mark.asyncio
async def test_create_account_unlocks_session(actor):
    account = await actor.accounts.create_account("alice", "s3cret")

    assert actor.accounts.is_unlocked
    assert actor.state.account_id == account.id
    assert actor.state.username == "alice"
    assert actor.accounts.public_key() == account.public_key
    assert "PRIVATE KEY" in actor.accounts.private_key()

    stored = await actor.accounts.get_account()
    assert stored.salt and stored.verification_tag
    assert actor.accounts.private_key().encode() not in stored.encrypted_private_key
    assert stored.created_at == actor.clock.now_ms()


@pytest.mark.asyncio
async def test_only_one_local_account(alice):
    with pytest.raises(AccountExistsError):
        await alice.accounts.create_account("mallory", "pw")


@pytest.mark.asyncio
async def test_empty_credentials_rejected(actor):
    with pytest.raises(ValidationError):
        await actor.accounts.create_account("  ", "pw")
    with pytest.raises(ValidationError):
        await actor.accounts.create_account("alice", "")


@pytest.mark.asyncio
async def test_unlock_round_trip(alice):
    session_key = alice.state.session_key
    private_key = alice.accounts.private_key()

    alice.accounts.lock()
    assert not alice.accounts.is_unlocked
    with pytest.raises(SessionLockedError):
        alice.accounts.private_key()

    assert await alice.accounts.unlock_account("alice-password") == session_key
    assert alice.accounts.private_key() == private_key


@pytest.mark.asyncio
async def test_wrong_password_keeps_session_locked(alice):
    alice.accounts.lock()
    with pytest.raises(InvalidCredentialsError):
        await alice.accounts.unlock_account("not the password")
    assert not alice.accounts.is_unlocked


@pytest.mark.asyncio
async def test_unlock_without_account(actor):
    with pytest.raises(AccountNotFoundError):
        await actor.accounts.unlock_account("pw")


@pytest.mark.asyncio
async def test_scrypt_account_unlocks_with_stored_params(actor):
    await actor.accounts.create_account("carol", "pw", kdf_params=ScryptParams(n=2 ** 10))
    stored = await actor.accounts.get_account()
    assert '"scrypt"' in stored.kdf_params

    actor.accounts.lock()
    await actor.accounts.unlock_account("pw")
    assert actor.accounts.is_unlocked


@pytest.mark.asyncio
async def test_rotate_key_pair_bumps_epoch_and_persists(alice):
    old_public = alice.accounts.public_key()
    alice.state.shared_secrets["peer"] = ("pem", alice.state.key_epoch, b"x" * 32)

    new_public = await alice.accounts.rotate_key_pair()

    assert new_public != old_public
    assert alice.state.key_epoch == 1
    assert alice.state.shared_secrets == {}

    alice.accounts.lock()
    await alice.accounts.unlock_account("alice-password")
    assert alice.accounts.public_key() == new_public


@pytest.mark.asyncio
async def test_rotate_requires_unlocked_session(alice):
    alice.accounts.lock()
    with pytest.raises(SessionLockedError):
        await alice.accounts.rotate_key_pair()
