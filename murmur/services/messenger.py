import logging
import uuid
from typing import Any

from pydantic import BaseModel, ValidationError as PydanticValidationError

from murmur.adapters.api.dao import AbstractTransport
from murmur.adapters.api.dto import (
    ChatMessageEvent,
    FriendAcceptEvent,
    FriendRequestEvent,
    KeyUpdateEvent,
    PresenceEvent,
    PresenceQueryEvent,
    QueueFlushEvent,
    StatusEvent,
    TimeEvent,
    inbound_event_adapter,
)
from murmur.adapters.database.dto import (
    FriendDTO,
    FriendState,
    MessageDTO,
    MessageRequestDTO,
    MessageStatus,
    ReplyReference,
)
from murmur.adapters.database.service import AccountService, FriendService, MessageStoreService
from murmur.adapters.encryption.service import EncryptionService
from murmur.exceptions import (
    BaseAppError,
    DecryptionError,
    DuplicateMessageError,
    InvalidKeyError,
    MissingPeerKeyError,
    RetryableError,
    SessionLockedError,
)
from murmur.state import SessionState

from .call import CallSession, CallType, SignalingMessage, SignalSender
from .clock import ClockService

UNDECRYPTABLE_PLACEHOLDER = "[unable to decrypt message]"

# statuses a recipient may report back about our messages
PEER_ACK_STATUSES = frozenset({MessageStatus.DELIVERED, MessageStatus.READ})


def make_signal_sender(transport: AbstractTransport, state: SessionState) -> SignalSender:
    async def send_signal(message: SignalingMessage) -> None:
        message.from_id = state.account_id
        await transport.send(message.model_dump(mode="json"))
    return send_signal


class MessengerService:
    """
    Glue between the UI intents, the relay transport and the local core:
    outbound messages are encrypted, stored and sent; inbound events are decoded
    and dispatched to the registry, the store, the clock or the call session.
    """

    def __init__(
            self,
            account_service: AccountService,
            friend_service: FriendService,
            message_store: MessageStoreService,
            encryption_service: EncryptionService,
            clock: ClockService,
            call_session: CallSession,
            transport: AbstractTransport,
            state: SessionState,
            logger: logging.Logger | None = None
    ):
        self._account_service = account_service
        self._friend_service = friend_service
        self._message_store = message_store
        self._encryption_service = encryption_service
        self._clock = clock
        self._call_session = call_session
        self._transport = transport
        self._state = state
        self._logger = logger or logging.getLogger(__name__)

    async def _send(self, event: BaseModel) -> None:
        await self._transport.send(event.model_dump(mode="json"))

    async def _send_best_effort(self, event: BaseModel) -> None:
        """Acks and notifications: the relay redelivers, so a lost ack is not an error"""
        try:
            await self._send(event)
        except RetryableError as e:
            self._logger.warning(
                f"Failed to send {event.type} event: {e}",
                extra={"context": {"event_type": event.type}}
            )

    def _require_unlocked(self) -> str:
        if not self._account_service.is_unlocked:
            raise SessionLockedError("Unlock the account first")
        return self._account_service.account_id

    # --- outbound intents --- #

    async def send_message(
            self,
            peer_id: str,
            text: str,
            reply_to: ReplyReference | None = None,
            msg_id: str | None = None
    ) -> MessageDTO:
        account_id = self._require_unlocked()
        secret = await self._friend_service.derived_secret_for(peer_id)
        payload = await self._encryption_service.encrypt_message(text, secret)

        stored = await self._message_store.append_message(
            MessageRequestDTO(
                msg_id=msg_id or str(uuid.uuid4()),
                from_id=account_id,
                to_id=peer_id,
                text=text,
                raw_payload=payload,
                timestamp=self._clock.now_ms(),
                status=MessageStatus.SENDING,
                reply_to=reply_to,
            )
        )

        return await self._transmit(stored)

    async def resend(self, msg_id: str) -> MessageDTO:
        """New send attempt for a failed message, encrypted under the current shared secret"""
        self._require_unlocked()
        failed = await self._message_store.get_message(msg_id)
        secret = await self._friend_service.derived_secret_for(failed.to_id)
        payload = await self._encryption_service.encrypt_message(failed.text, secret)

        retry = await self._message_store.resend(msg_id, str(uuid.uuid4()), raw_payload=payload)
        self._logger.info(f"Resending {msg_id} as {retry.msg_id}")
        return await self._transmit(retry)

    async def _transmit(self, stored: MessageDTO) -> MessageDTO:
        event = ChatMessageEvent(
            msg_id=stored.msg_id,
            from_id=stored.from_id,
            to_id=stored.to_id,
            payload=ChatMessageEvent.encode_payload(stored.raw_payload),
            timestamp=stored.timestamp,
            reply_to_id=stored.reply_to_id,
            reply_to_text=stored.reply_to_text,
            reply_to_sender=stored.reply_to_sender,
        )
        try:
            await self._send(event)
        except RetryableError as e:
            self._logger.warning(
                f"Message {stored.msg_id} could not be sent: {e}",
                extra={"context": {"msg_id": stored.msg_id, "peer_id": stored.to_id}}
            )
            return await self._message_store.complete_send(stored.msg_id, MessageStatus.FAILED)

        return await self._message_store.complete_send(stored.msg_id, MessageStatus.SENT)

    async def request_friend(self, peer_id: str, username: str | None = None) -> FriendDTO:
        account_id = self._require_unlocked()
        friend = await self._friend_service.request_friend(peer_id, username)

        if friend.state == FriendState.FRIEND:
            await self._send(FriendAcceptEvent(
                from_id=account_id, to_id=peer_id, public_key=self._account_service.public_key()
            ))
        else:
            await self._send(FriendRequestEvent(
                from_id=account_id,
                to_id=peer_id,
                username=self._state.username,
                public_key=self._account_service.public_key(),
            ))
        return friend

    async def accept_friend(self, peer_id: str) -> FriendDTO:
        account_id = self._require_unlocked()
        friend = await self._friend_service.accept_friend(peer_id)
        await self._send(FriendAcceptEvent(
            from_id=account_id, to_id=peer_id, public_key=self._account_service.public_key()
        ))
        return friend

    async def mark_read(self, conversation_id: str) -> list[str]:
        account_id = self._require_unlocked()
        msg_ids = await self._message_store.mark_conversation_read(conversation_id)
        for msg_id in msg_ids:
            message = await self._message_store.get_message(msg_id)
            if message.from_id != account_id:
                await self._send_best_effort(StatusEvent(
                    msg_id=msg_id, status=MessageStatus.READ, from_id=account_id, to_id=message.from_id
                ))
        return msg_ids

    async def rotate_keys(self) -> str:
        """Rotate our key pair and hand the new public key to every friend"""
        account_id = self._require_unlocked()
        public_key = await self._account_service.rotate_key_pair()
        self._friend_service.invalidate_secrets()

        for friend in await self._friend_service.list_friends(FriendState.FRIEND):
            await self._send_best_effort(KeyUpdateEvent(
                from_id=account_id, to_id=friend.uuid, public_key=public_key
            ))
        return public_key

    async def start_call(self, peer_id: str, call_type: CallType = CallType.VOICE) -> None:
        self._require_unlocked()
        await self._call_session.start_call(peer_id, call_type)

    async def request_presence(self, peer_id: str) -> None:
        """Asks the relay for the peer's presence; the answer arrives as a presence event"""
        await self._send(PresenceQueryEvent(peer_id=peer_id))

    # --- inbound events --- #

    async def on_frame(self, frame: str | bytes) -> None:
        """Transport listener entry point; a rejected event never stops the listen loop"""
        try:
            await self.handle_event(frame)
        except BaseAppError as e:
            self._logger.warning(
                f"Inbound event rejected: {e.message}",
                extra={"context": {"error_type": e.__class__.__name__}}
            )

    async def handle_event(self, raw: str | bytes | dict[str, Any]) -> Any:
        try:
            if isinstance(raw, dict):
                event = inbound_event_adapter.validate_python(raw)
            else:
                event = inbound_event_adapter.validate_json(raw)
        except PydanticValidationError as e:
            self._logger.warning(f"Dropping malformed event: {e.error_count()} validation errors")
            return None

        if isinstance(event, ChatMessageEvent):
            return await self._on_chat_message(event)
        if isinstance(event, StatusEvent):
            return await self._on_status(event)
        if isinstance(event, FriendRequestEvent):
            return await self._on_friend_request(event)
        if isinstance(event, FriendAcceptEvent):
            return await self._friend_service.receive_friend_accept(event.from_id, event.public_key)
        if isinstance(event, KeyUpdateEvent):
            return await self._on_key_update(event)
        if isinstance(event, TimeEvent):
            return self._clock.update_offset(event.server_time)
        if isinstance(event, PresenceEvent):
            return await self._on_presence(event)
        if isinstance(event, QueueFlushEvent):
            return await self._on_queue_flush(event)
        if isinstance(event, SignalingMessage):
            return await self._call_session.handle_signal(event)
        return None

    async def _on_chat_message(self, event: ChatMessageEvent) -> MessageDTO | None:
        is_echo = event.is_echo or event.from_id == self._state.account_id
        peer_id = event.to_id if is_echo else event.from_id
        raw_payload = event.raw_payload()

        try:
            secret = await self._friend_service.derived_secret_for(peer_id)
            text = await self._encryption_service.decrypt_message(raw_payload, secret)
        except (DecryptionError, InvalidKeyError, MissingPeerKeyError, SessionLockedError):
            # raw payload is kept, re_decrypt can recover the text once keys line up
            text = UNDECRYPTABLE_PLACEHOLDER

        reply_to = None
        if event.reply_to_id:
            reply_to = ReplyReference(id=event.reply_to_id, text=event.reply_to_text, sender=event.reply_to_sender)

        stored = None
        try:
            stored = await self._message_store.append_message(
                MessageRequestDTO(
                    msg_id=event.msg_id,
                    from_id=event.from_id,
                    to_id=event.to_id,
                    text=text,
                    raw_payload=raw_payload,
                    timestamp=event.timestamp,
                    status=MessageStatus.SENT if is_echo else MessageStatus.DELIVERED,
                    is_echo=is_echo,
                    group_id=event.group_id,
                    reply_to=reply_to,
                )
            )
        except DuplicateMessageError:
            self._logger.debug(f"Redelivered message {event.msg_id} ignored")

        if not is_echo:
            await self._send_best_effort(StatusEvent(
                msg_id=event.msg_id,
                status=MessageStatus.DELIVERED,
                from_id=self._state.account_id,
                to_id=event.from_id,
            ))
        return stored

    async def _on_friend_request(self, event: FriendRequestEvent) -> FriendDTO:
        friend = await self._friend_service.receive_friend_request(event.from_id, event.public_key, event.username)
        if friend.state == FriendState.FRIEND and self._account_service.is_unlocked:
            # crossing requests: both sides were pending_outgoing
            await self._send_best_effort(FriendAcceptEvent(
                from_id=self._state.account_id,
                to_id=event.from_id,
                public_key=self._account_service.public_key(),
            ))
        return friend

    async def _on_key_update(self, event: KeyUpdateEvent) -> FriendDTO | None:
        friend = await self._friend_service.get_friend(event.from_id)
        if friend is None or friend.state != FriendState.FRIEND:
            self._logger.debug(f"Key update from non-friend {event.from_id} ignored")
            return None
        return await self._friend_service.receive_friend_accept(event.from_id, event.public_key)

    async def _on_status(self, event: StatusEvent) -> MessageDTO | None:
        """Delivery and read acks, honored only from a recipient of one of our own messages"""
        if event.status not in PEER_ACK_STATUSES:
            self._logger.warning(
                f"Dropping {event.status} ack for {event.msg_id}, peers may only report delivered or read",
                extra={"context": {"msg_id": event.msg_id, "from_id": event.from_id}}
            )
            return None

        message = await self._message_store.get_message(event.msg_id)
        if not await self._is_recipient(message, event.from_id):
            self._logger.warning(
                f"Dropping ack for {event.msg_id} from {event.from_id}, not a recipient",
                extra={"context": {"msg_id": event.msg_id, "from_id": event.from_id}}
            )
            return None
        return await self._message_store.update_status(event.msg_id, event.status)

    async def _is_recipient(self, message: MessageDTO, peer_id: str | None) -> bool:
        if peer_id is None or message.from_id != self._state.account_id:
            return False
        if peer_id == message.to_id:
            return True
        conversation = await self._message_store.get_conversation(message.conversation_id)
        return bool(conversation and conversation.is_group and peer_id in (conversation.participants or []))

    async def _on_presence(self, event: PresenceEvent) -> FriendDTO | None:
        if event.peer_id == self._state.account_id:
            return None
        return await self._friend_service.record_presence(
            event.peer_id, event.status == "online", event.public_key
        )

    async def _on_queue_flush(self, event: QueueFlushEvent) -> list[MessageDTO]:
        """Dispatches every held message on its own; one bad entry never drops the rest"""
        stored = []
        for entry in event.messages:
            try:
                message = ChatMessageEvent.model_validate(entry)
                result = await self._on_chat_message(message)
            except PydanticValidationError as e:
                self._logger.warning(f"Dropping malformed queued message: {e.error_count()} validation errors")
                continue
            except BaseAppError as e:
                self._logger.warning(
                    f"Queued message rejected: {e.message}",
                    extra={"context": {"msg_id": entry.get("msg_id"), "error_type": e.__class__.__name__}}
                )
                continue
            if result is not None:
                stored.append(result)

        self._logger.info(
            f"Queue flush: {len(stored)} of {len(event.messages)} messages stored",
            extra={"context": {"queued": len(event.messages)}}
        )
        return stored
