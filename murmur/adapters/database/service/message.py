import logging

from murmur.adapters.database.dao.common import AbstractCommonDAO
from murmur.adapters.database.dao.conversation import AbstractConversationDAO
from murmur.adapters.database.dao.message import AbstractMessageDAO
from murmur.adapters.database.dto import (
    ConversationDTO,
    ConversationRequestDTO,
    MessageDTO,
    MessageRequestDTO,
    MessageStatus,
    ReplyReference,
    UpdateConversationRequestDTO,
)
from murmur.adapters.encryption.service import EncryptionService
from murmur.exceptions import (
    BlockedSenderError,
    ConversationNotFoundError,
    DecryptionError,
    DuplicateMessageError,
    InvalidStatusTransitionError,
    MessageNotFoundError,
    UnknownParticipantError,
)
from murmur.services.clock import ClockService
from murmur.state import SessionState

from .friend import FriendService

PREVIEW_LENGTH = 120

# forward-only; failed is reachable from sending and sent only
STATUS_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.SENDING: frozenset({
        MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.FAILED
    }),
    MessageStatus.SENT: frozenset({MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.FAILED}),
    MessageStatus.DELIVERED: frozenset({MessageStatus.READ}),
    MessageStatus.READ: frozenset(),
    MessageStatus.FAILED: frozenset(),
}


def is_valid_transition(current: MessageStatus, new: MessageStatus) -> bool:
    return new in STATUS_TRANSITIONS[current]


class MessageStoreService:
    def __init__(
            self,
            message_dao: AbstractMessageDAO,
            conversation_dao: AbstractConversationDAO,
            common_dao: AbstractCommonDAO,
            friend_service: FriendService,
            encryption_service: EncryptionService,
            clock: ClockService,
            state: SessionState,
            logger: logging.Logger | None = None
    ):
        self._message_dao = message_dao
        self._conversation_dao = conversation_dao
        self._common_dao = common_dao
        self._friend_service = friend_service
        self._encryption_service = encryption_service
        self._clock = clock
        self._state = state
        self._logger = logger or logging.getLogger(__name__)

    # --- projections --- #

    async def list_conversations(self) -> list[ConversationDTO]:
        return await self._conversation_dao.get_conversations()

    async def get_conversation(self, conversation_id: str) -> ConversationDTO | None:
        return await self._conversation_dao.get_conversation(conversation_id)

    async def list_messages(self, conversation_id: str, limit: int | None = None) -> list[MessageDTO]:
        return await self._message_dao.get_messages(conversation_id, limit)

    async def get_message(self, msg_id: str) -> MessageDTO:
        message = await self._message_dao.get_message(msg_id)
        if message is None:
            raise MessageNotFoundError(f"Message {msg_id} not found", context={"msg_id": msg_id})
        return message

    def focus_conversation(self, conversation_id: str | None) -> None:
        self._state.focused_conversation_id = conversation_id

    # --- writes --- #

    def _is_outgoing(self, message: MessageRequestDTO) -> bool:
        return message.is_echo or (
            self._state.account_id is not None and message.from_id == self._state.account_id
        )

    def conversation_id_for(self, message: MessageRequestDTO) -> str:
        if message.group_id:
            return message.group_id
        return message.to_id if self._is_outgoing(message) else message.from_id

    async def append_message(self, message: MessageRequestDTO) -> MessageDTO:
        outgoing = self._is_outgoing(message)
        conversation_id = self.conversation_id_for(message)
        if message.timestamp is None:
            message = message.model_copy(update={"timestamp": self._clock.now_ms()})

        async with self._state.conversation_locks(conversation_id):
            if await self._message_dao.get_message(message.msg_id, is_echo=message.is_echo):
                raise DuplicateMessageError(
                    f"Message {message.msg_id} already stored",
                    context={"msg_id": message.msg_id, "is_echo": message.is_echo}
                )

            if not outgoing and await self._friend_service.is_blocked(message.from_id):
                raise BlockedSenderError(
                    f"Message from blocked peer {message.from_id} rejected",
                    context={"msg_id": message.msg_id, "from_id": message.from_id}
                )

            conversation = await self._conversation_dao.get_conversation(conversation_id)
            if message.group_id:
                if conversation is None:
                    raise ConversationNotFoundError(
                        f"Unknown group {message.group_id}",
                        context={"group_id": message.group_id}
                    )
                if not outgoing and message.from_id not in (conversation.participants or []):
                    raise UnknownParticipantError(
                        f"{message.from_id} is not a participant of {message.group_id}",
                        context={"group_id": message.group_id, "from_id": message.from_id}
                    )

            # authoritative-wins: an echo of an already stored message never touches the preview
            shadowed = message.is_echo and await self._message_dao.get_message(message.msg_id, is_echo=False) is not None

            try:
                stored = await self._message_dao.add_message(message, conversation_id)
                if conversation is None:
                    conversation = await self._conversation_dao.add_conversation(
                        ConversationRequestDTO(
                            id=conversation_id,
                            username=await self._peer_label(conversation_id),
                        )
                    )
                counts_unread = (
                    not outgoing
                    and stored.status != MessageStatus.READ
                    and self._state.focused_conversation_id != conversation_id
                )
                await self._touch_conversation(conversation, stored, counts_unread, shadowed)
                await self._common_dao.commit()
            except Exception:
                await self._common_dao.rollback()
                raise

        self._logger.debug(
            f"Message {stored.msg_id} stored",
            extra={"context": {
                "conversation_id": conversation_id,
                "is_echo": stored.is_echo,
                "status": stored.status
            }}
        )
        return stored

    async def _peer_label(self, peer_id: str) -> str:
        friend = await self._friend_service.get_friend(peer_id)
        return friend.username if friend else peer_id

    async def _touch_conversation(
            self,
            conversation: ConversationDTO,
            message: MessageDTO,
            counts_unread: bool,
            shadowed: bool
    ) -> None:
        update = UpdateConversationRequestDTO(id=conversation.id)
        if message.timestamp >= conversation.last_timestamp:
            update.last_timestamp = message.timestamp
            if not shadowed:
                update.last_message = message.text[:PREVIEW_LENGTH]
        if counts_unread:
            update.unread_count = conversation.unread_count + 1
        await self._conversation_dao.update_conversation(update)

    async def _apply_status(self, message: MessageDTO, new_status: MessageStatus) -> MessageDTO:
        if not is_valid_transition(message.status, new_status):
            raise InvalidStatusTransitionError(
                f"Illegal status transition for {message.msg_id}: {message.status} -> {new_status}",
                current=message.status,
                requested=new_status,
                context={"msg_id": message.msg_id}
            )

        try:
            updated = await self._message_dao.update_status(message.id, new_status)
            await self._common_dao.commit()
        except Exception:
            await self._common_dao.rollback()
            raise

        self._logger.debug(f"Message {message.msg_id}: {message.status} -> {new_status}")
        return updated

    async def update_status(self, msg_id: str, new_status: MessageStatus) -> MessageDTO:
        """
        Applies one status transition, linearized per msg_id.
        Same status again is a no-op (acks get redelivered); backward moves raise.
        """
        new_status = MessageStatus(new_status)
        async with self._state.message_locks(msg_id):
            message = await self.get_message(msg_id)
            if message.status == new_status:
                return message
            return await self._apply_status(message, new_status)

    async def complete_send(self, msg_id: str, outcome: MessageStatus) -> MessageDTO:
        """
        Settles a send attempt as sent or failed. The relay may ack before transport.send returns;
        a record an ack already moved past sending is returned as is.
        """
        async with self._state.message_locks(msg_id):
            message = await self.get_message(msg_id)
            if message.status != MessageStatus.SENDING:
                self._logger.debug(f"Message {msg_id} already {message.status}, send outcome {outcome} dropped")
                return message
            return await self._apply_status(message, MessageStatus(outcome))

    async def re_decrypt(self, msg_id: str, new_key: bytes) -> str:
        """
        Decrypts the retained raw payload again (after a key change) and overwrites the plaintext.
        On DecryptionError the stored plaintext is left untouched.
        """
        async with self._state.message_locks(msg_id):
            message = await self.get_message(msg_id)
            if not message.raw_payload:
                raise DecryptionError(
                    f"No raw payload retained for {msg_id}",
                    context={"msg_id": msg_id}
                )

            text = await self._encryption_service.decrypt_message(message.raw_payload, new_key)

            try:
                await self._message_dao.update_text(message.id, text)
                conversation = await self._conversation_dao.get_conversation(message.conversation_id)
                if conversation and conversation.last_timestamp == message.timestamp:
                    await self._conversation_dao.update_conversation(
                        UpdateConversationRequestDTO(id=conversation.id, last_message=text[:PREVIEW_LENGTH])
                    )
                await self._common_dao.commit()
            except Exception:
                await self._common_dao.rollback()
                raise

        self._logger.info(f"Message {msg_id} re-decrypted")
        return text

    async def mark_conversation_read(self, conversation_id: str) -> list[str]:
        """Resets unread to 0 and moves every delivered message to read, returns their msg ids"""
        async with self._state.conversation_locks(conversation_id):
            conversation = await self._conversation_dao.get_conversation(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(
                    f"Conversation {conversation_id} not found",
                    context={"conversation_id": conversation_id}
                )
            try:
                msg_ids = await self._message_dao.mark_delivered_as_read(conversation_id)
                await self._conversation_dao.update_conversation(
                    UpdateConversationRequestDTO(id=conversation_id, unread_count=0)
                )
                await self._common_dao.commit()
            except Exception:
                await self._common_dao.rollback()
                raise

        self._logger.debug(
            f"Conversation {conversation_id} marked read",
            extra={"context": {"messages_read": len(msg_ids)}}
        )
        return msg_ids

    async def create_group(self, group_id: str, title: str, participants: list[str]) -> ConversationDTO:
        try:
            conversation = await self._conversation_dao.add_conversation(
                ConversationRequestDTO(
                    id=group_id,
                    username=title,
                    is_group=True,
                    participants=participants,
                )
            )
            await self._common_dao.commit()
        except Exception:
            await self._common_dao.rollback()
            raise
        return conversation

    async def resend(self, msg_id: str, new_msg_id: str, raw_payload: bytes | None = None) -> MessageDTO:
        """
        New send attempt for a failed message; the failed record itself never moves.
        raw_payload replaces the failed payload when the text was encrypted again.
        """
        failed = await self.get_message(msg_id)
        if failed.status != MessageStatus.FAILED:
            raise InvalidStatusTransitionError(
                f"Only failed messages can be resent, {msg_id} is {failed.status}",
                current=failed.status,
                requested=MessageStatus.SENDING,
                context={"msg_id": msg_id}
            )

        conversation = await self._conversation_dao.get_conversation(failed.conversation_id)
        reply = None
        if failed.reply_to_id:
            reply = ReplyReference(id=failed.reply_to_id, text=failed.reply_to_text, sender=failed.reply_to_sender)

        return await self.append_message(
            MessageRequestDTO(
                msg_id=new_msg_id,
                from_id=failed.from_id,
                to_id=failed.to_id,
                text=failed.text,
                raw_payload=raw_payload or failed.raw_payload,
                status=MessageStatus.SENDING,
                group_id=failed.conversation_id if conversation and conversation.is_group else None,
                reply_to=reply,
            )
        )
