import asyncio
import os
import pytest

from murmur.adapters.database.dto import MessageRequestDTO, MessageStatus, ReplyReference
from murmur.adapters.database.service import is_valid_transition
from murmur.exceptions import (
    BlockedSenderError,
    ConversationNotFoundError,
    DecryptionError,
    DuplicateMessageError,
    InvalidStatusTransitionError,
    MessageNotFoundError,
    UnknownParticipantError,
)

from conftest import START_MS


def inbound(actor, msg_id: str, timestamp: int, text: str = "hi", from_id: str = "bob", **kwargs):
    return MessageRequestDTO(
        msg_id=msg_id,
        from_id=from_id,
        to_id=actor.state.account_id,
        text=text,
        timestamp=timestamp,
        status=MessageStatus.DELIVERED,
        **kwargs
    )


def outbound(actor, msg_id: str, timestamp: int, text: str = "hello", to_id: str = "bob", **kwargs):
    return MessageRequestDTO(
        msg_id=msg_id,
        from_id=actor.state.account_id,
        to_id=to_id,
        text=text,
        timestamp=timestamp,
        **kwargs
    )


@pytest.mark.asyncio
async def test_inbound_message_creates_conversation(alice):
    stored = await alice.store.append_message(inbound(alice, "m1", START_MS, "first"))

    assert stored.conversation_id == "bob"
    conversation = await alice.store.get_conversation("bob")
    assert conversation.last_message == "first"
    assert conversation.last_timestamp == START_MS
    assert conversation.unread_count == 1
    assert not conversation.is_group


@pytest.mark.asyncio
async def test_missing_timestamp_comes_from_clock(alice):
    alice.clock.update_offset(START_MS + 3000)
    stored = await alice.store.append_message(inbound(alice, "m1", None))
    assert stored.timestamp == START_MS + 3000


@pytest.mark.asyncio
async def test_outgoing_and_focused_messages_do_not_count_unread(alice):
    await alice.store.append_message(outbound(alice, "o1", START_MS))
    assert (await alice.store.get_conversation("bob")).unread_count == 0

    alice.store.focus_conversation("bob")
    await alice.store.append_message(inbound(alice, "m1", START_MS + 1))
    assert (await alice.store.get_conversation("bob")).unread_count == 0

    alice.store.focus_conversation(None)
    await alice.store.append_message(inbound(alice, "m2", START_MS + 2))
    assert (await alice.store.get_conversation("bob")).unread_count == 1


@pytest.mark.asyncio
async def test_preview_follows_newest_message(alice):
    await alice.store.append_message(inbound(alice, "m2", START_MS + 10, "newer"))
    await alice.store.append_message(inbound(alice, "m1", START_MS, "older"))

    conversation = await alice.store.get_conversation("bob")
    assert conversation.last_timestamp == START_MS + 10
    assert conversation.last_message == "newer"
    assert [m.msg_id for m in await alice.store.list_messages("bob")] == ["m1", "m2"]


@pytest.mark.asyncio
async def test_preview_is_truncated(alice):
    await alice.store.append_message(inbound(alice, "m1", START_MS, "x" * 500))
    assert len((await alice.store.get_conversation("bob")).last_message) == 120


@pytest.mark.asyncio
async def test_duplicate_message_is_rejected(alice):
    await alice.store.append_message(inbound(alice, "m1", START_MS, "once"))
    with pytest.raises(DuplicateMessageError):
        await alice.store.append_message(inbound(alice, "m1", START_MS + 5, "twice"))

    assert len(await alice.store.list_messages("bob")) == 1
    assert (await alice.store.get_conversation("bob")).unread_count == 1


@pytest.mark.asyncio
async def test_echo_of_stored_message_is_shadowed(alice):
    await alice.store.append_message(outbound(alice, "o1", START_MS, "original"))
    await alice.store.append_message(outbound(alice, "o1", START_MS + 1, "echoed copy", is_echo=True))

    conversation = await alice.store.get_conversation("bob")
    assert conversation.last_message == "original"
    assert conversation.unread_count == 0

    message = await alice.store.get_message("o1")
    assert not message.is_echo
    assert message.text == "original"


@pytest.mark.asyncio
async def test_echo_without_original_is_kept(alice):
    await alice.store.append_message(outbound(alice, "o1", START_MS, "from other device", is_echo=True))
    conversation = await alice.store.get_conversation("bob")
    assert conversation.last_message == "from other device"
    assert (await alice.store.get_message("o1")).is_echo


@pytest.mark.asyncio
async def test_blocked_sender_is_rejected(alice):
    await alice.friends.request_friend("bob")
    await alice.friends.block_friend("bob")

    with pytest.raises(BlockedSenderError):
        await alice.store.append_message(inbound(alice, "m1", START_MS))
    assert await alice.store.list_messages("bob") == []
    assert await alice.store.get_conversation("bob") is None


@pytest.mark.asyncio
async def test_blocked_sender_leaves_existing_conversation_alone(alice):
    await alice.store.append_message(inbound(alice, "m1", START_MS, "before block"))
    before = await alice.store.get_conversation("bob")
    await alice.friends.request_friend("bob")
    await alice.friends.block_friend("bob")

    with pytest.raises(BlockedSenderError):
        await alice.store.append_message(inbound(alice, "m2", START_MS + 10, "after block"))

    assert await alice.store.get_conversation("bob") == before
    assert [message.msg_id for message in await alice.store.list_messages("bob")] == ["m1"]


@pytest.mark.asyncio
async def test_group_messages(alice):
    with pytest.raises(ConversationNotFoundError):
        await alice.store.append_message(inbound(alice, "g0", START_MS, group_id="team"))

    await alice.store.create_group("team", "Team", ["bob", "carol"])
    stored = await alice.store.append_message(inbound(alice, "g1", START_MS, "standup?", group_id="team"))
    assert stored.conversation_id == "team"

    with pytest.raises(UnknownParticipantError):
        await alice.store.append_message(inbound(alice, "g2", START_MS, from_id="mallory", group_id="team"))

    conversation = await alice.store.get_conversation("team")
    assert conversation.is_group
    assert conversation.participants == ["bob", "carol"]
    assert conversation.unread_count == 1


@pytest.mark.asyncio
async def test_reply_reference_is_stored(alice):
    reply = ReplyReference(id="m1", text="hi", sender="bob")
    await alice.store.append_message(inbound(alice, "m1", START_MS))
    stored = await alice.store.append_message(outbound(alice, "o1", START_MS + 1, reply_to=reply))

    assert (stored.reply_to_id, stored.reply_to_text, stored.reply_to_sender) == ("m1", "hi", "bob")


def test_transition_table():
    assert is_valid_transition(MessageStatus.SENDING, MessageStatus.SENT)
    assert is_valid_transition(MessageStatus.SENT, MessageStatus.READ)
    assert not is_valid_transition(MessageStatus.READ, MessageStatus.DELIVERED)
    assert not is_valid_transition(MessageStatus.DELIVERED, MessageStatus.FAILED)
    assert not is_valid_transition(MessageStatus.FAILED, MessageStatus.SENT)


@pytest.mark.asyncio
async def test_status_moves_forward_only(alice):
    await alice.store.append_message(outbound(alice, "o1", START_MS))

    assert (await alice.store.update_status("o1", MessageStatus.SENT)).status == MessageStatus.SENT
    assert (await alice.store.update_status("o1", MessageStatus.READ)).status == MessageStatus.READ
    # redelivered ack
    assert (await alice.store.update_status("o1", MessageStatus.READ)).status == MessageStatus.READ

    with pytest.raises(InvalidStatusTransitionError) as error:
        await alice.store.update_status("o1", MessageStatus.DELIVERED)
    assert error.value.current == MessageStatus.READ
    assert (await alice.store.get_message("o1")).status == MessageStatus.READ


@pytest.mark.asyncio
async def test_concurrent_status_updates_are_linearized(alice):
    await alice.store.append_message(outbound(alice, "o1", START_MS))

    await asyncio.gather(
        alice.store.update_status("o1", MessageStatus.SENT),
        alice.store.update_status("o1", MessageStatus.DELIVERED),
        alice.store.update_status("o1", MessageStatus.READ),
    )
    assert (await alice.store.get_message("o1")).status == MessageStatus.READ


@pytest.mark.asyncio
async def test_unknown_message(alice):
    with pytest.raises(MessageNotFoundError):
        await alice.store.update_status("nope", MessageStatus.SENT)


@pytest.mark.asyncio
async def test_mark_conversation_read(alice):
    await alice.store.append_message(inbound(alice, "m1", START_MS))
    await alice.store.append_message(inbound(alice, "m2", START_MS + 1))
    await alice.store.append_message(outbound(alice, "o1", START_MS + 2))

    assert sorted(await alice.store.mark_conversation_read("bob")) == ["m1", "m2"]

    conversation = await alice.store.get_conversation("bob")
    assert conversation.unread_count == 0
    statuses = {m.msg_id: m.status for m in await alice.store.list_messages("bob")}
    assert statuses == {"m1": MessageStatus.READ, "m2": MessageStatus.READ, "o1": MessageStatus.SENDING}

    with pytest.raises(ConversationNotFoundError):
        await alice.store.mark_conversation_read("ghost")


@pytest.mark.asyncio
async def test_re_decrypt_recovers_text(alice):
    key = os.urandom(32)
    payload = await alice.encryption.encrypt_message("secret text", key)
    await alice.store.append_message(inbound(alice, "m1", START_MS, "[unreadable]", raw_payload=payload))

    with pytest.raises(DecryptionError):
        await alice.store.re_decrypt("m1", os.urandom(32))
    assert (await alice.store.get_message("m1")).text == "[unreadable]"

    assert await alice.store.re_decrypt("m1", key) == "secret text"
    assert (await alice.store.get_message("m1")).text == "secret text"
    assert (await alice.store.get_conversation("bob")).last_message == "secret text"


@pytest.mark.asyncio
async def test_re_decrypt_without_payload(alice):
    await alice.store.append_message(inbound(alice, "m1", START_MS))
    with pytest.raises(DecryptionError):
        await alice.store.re_decrypt("m1", os.urandom(32))


@pytest.mark.asyncio
async def test_resend_only_from_failed(alice):
    await alice.store.append_message(outbound(alice, "o1", START_MS, "retry me"))
    with pytest.raises(InvalidStatusTransitionError):
        await alice.store.resend("o1", "o2")

    await alice.store.update_status("o1", MessageStatus.FAILED)
    retry = await alice.store.resend("o1", "o2")

    assert retry.status == MessageStatus.SENDING
    assert retry.text == "retry me"
    assert (await alice.store.get_message("o1")).status == MessageStatus.FAILED


@pytest.mark.asyncio
async def test_conversations_ordered_by_recency(alice):
    await alice.store.append_message(inbound(alice, "m1", START_MS, from_id="bob"))
    await alice.store.append_message(inbound(alice, "m2", START_MS + 5, from_id="carol"))
    assert [c.id for c in await alice.store.list_conversations()] == ["carol", "bob"]
