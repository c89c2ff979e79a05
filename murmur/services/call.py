"""
Voice/video call session state machine.

    idle --start_call--> calling --peer accepted--> connected
    idle --invite------> ringing --local accept--> connected
    calling/ringing --reject | timeout--> idle
    any --end_call--> idle

Only one session exists at a time. Media devices and the signaling transport are
external collaborators; this module only sequences events between them.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from enum import StrEnum
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel

from murmur.exceptions import CallBusyError, InvalidCallStateError

from .clock import ClockService


class CallState(StrEnum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    CONNECTED = "connected"


class CallType(StrEnum):
    VOICE = "voice"
    VIDEO = "video"


class SignalKind(StrEnum):
    INVITE = "invite"
    ACCEPT = "accept"
    REJECT = "reject"
    HANGUP = "hangup"
    CANCEL = "cancel"
    CANDIDATE = "candidate"


class SignalingMessage(BaseModel):
    type: Literal["signal"] = "signal"
    kind: SignalKind
    to_id: str
    from_id: str | None = None
    call_type: CallType | None = None
    reason: str | None = None
    payload: dict[str, Any] | None = None  # opaque media negotiation data


class AbstractMediaDevice(ABC):
    @abstractmethod
    async def attach_inbound_stream(self, peer_id: str, call_type: CallType) -> None:
        raise NotImplementedError()

    @abstractmethod
    async def apply_negotiation(self, payload: dict[str, Any]) -> None:
        raise NotImplementedError()

    @abstractmethod
    async def release(self) -> None:
        raise NotImplementedError()


SignalSender = Callable[[SignalingMessage], Awaitable[None]]
StateListener = Callable[[CallState, CallState], None]


class CallSession:
    def __init__(
            self,
            send_signal: SignalSender,
            clock: ClockService,
            media: AbstractMediaDevice | None = None,
            timeout: float = 30.0,
            logger: logging.Logger | None = None
    ):
        self._send_signal = send_signal
        self._clock = clock
        self._media = media
        self._timeout = timeout
        self._logger = logger or logging.getLogger(__name__)

        self._state = CallState.IDLE
        self._peer_id: str | None = None
        self._call_type: CallType | None = None
        self._connected_at: int | None = None
        self._generation = 0
        self._timeout_task: asyncio.Task | None = None
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def peer_id(self) -> str | None:
        return self._peer_id

    @property
    def call_type(self) -> CallType | None:
        return self._call_type

    @property
    def duration_ms(self) -> int:
        if self._state != CallState.CONNECTED or self._connected_at is None:
            return 0
        return max(0, self._clock.now_ms() - self._connected_at)

    def add_listener(self, callback: StateListener) -> None:
        self._listeners.append(callback)

    # --- local intents --- #

    async def start_call(self, peer_id: str, call_type: CallType = CallType.VOICE) -> None:
        self._ensure_idle(peer_id)
        self._begin(peer_id, call_type)
        self._transition(CallState.CALLING)
        try:
            await self._emit(SignalKind.INVITE, call_type=call_type)
        except Exception:
            await self._reset()
            raise

    async def incoming_invite(self, peer_id: str, call_type: CallType = CallType.VOICE) -> None:
        self._ensure_idle(peer_id)
        self._begin(peer_id, call_type)
        self._transition(CallState.RINGING)

    async def local_accept(self) -> None:
        self._require(CallState.RINGING, "accept")
        self._cancel_timeout()
        try:
            if self._media:
                await self._media.attach_inbound_stream(self._peer_id, self._call_type)
            await self._emit(SignalKind.ACCEPT, call_type=self._call_type)
        except Exception:
            await self._reset()
            raise
        self._transition(CallState.CONNECTED)

    async def local_reject(self) -> None:
        self._require(CallState.RINGING, "reject")
        peer_id = self._peer_id
        await self._reset()
        await self._emit(SignalKind.REJECT, to_id=peer_id)

    async def peer_accepted(self) -> None:
        self._require(CallState.CALLING, "peer accept")
        self._cancel_timeout()
        self._transition(CallState.CONNECTED)

    async def peer_rejected(self) -> None:
        self._require(CallState.CALLING, "peer reject")
        await self._reset()

    async def end_call(self) -> None:
        """Either party hangs up; from idle this is a no-op"""
        if self._state == CallState.IDLE:
            return
        peer_id = self._peer_id
        await self._reset()
        await self._emit(SignalKind.HANGUP, to_id=peer_id)

    # --- inbound signaling --- #

    async def handle_signal(self, message: SignalingMessage) -> CallState:
        sender = message.from_id

        if message.kind == SignalKind.INVITE:
            if sender is None:
                self._logger.warning("Ignoring invite without a sender")
                return self._state
            try:
                await self.incoming_invite(sender, message.call_type or CallType.VOICE)
            except CallBusyError:
                await self._send_signal(
                    SignalingMessage(kind=SignalKind.REJECT, to_id=sender, reason="busy")
                )
            return self._state

        if self._state == CallState.IDLE or sender != self._peer_id:
            self._logger.debug(
                f"Ignoring stray {message.kind} signal",
                extra={"context": {"from_id": sender, "state": self._state}}
            )
            return self._state

        if message.kind == SignalKind.ACCEPT and self._state == CallState.CALLING:
            await self.peer_accepted()
        elif message.kind == SignalKind.REJECT and self._state == CallState.CALLING:
            await self.peer_rejected()
        elif message.kind in (SignalKind.HANGUP, SignalKind.CANCEL, SignalKind.REJECT):
            await self._reset()
        elif message.kind == SignalKind.CANDIDATE:
            if self._media and message.payload:
                await self._media.apply_negotiation(message.payload)
        else:
            self._logger.debug(f"Signal {message.kind} has no effect in state {self._state}")

        return self._state

    # --- internals --- #

    def _ensure_idle(self, peer_id: str) -> None:
        if self._state != CallState.IDLE:
            raise CallBusyError(
                "Another call is already active",
                context={"peer_id": peer_id, "active_peer": self._peer_id, "state": self._state}
            )

    def _require(self, expected: CallState, action: str) -> None:
        if self._state != expected:
            raise InvalidCallStateError(
                f"Cannot {action} while {self._state}",
                context={"expected": expected, "state": self._state}
            )

    def _begin(self, peer_id: str, call_type: CallType) -> None:
        self._generation += 1
        self._peer_id = peer_id
        self._call_type = call_type
        self._arm_timeout()

    def _transition(self, new_state: CallState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state == CallState.CONNECTED:
            self._connected_at = self._clock.now_ms()

        self._logger.info(
            f"Call state {old_state} -> {new_state}",
            extra={"context": {"peer_id": self._peer_id, "call_type": self._call_type}}
        )
        for callback in list(self._listeners):
            callback(old_state, new_state)

    async def _emit(self, kind: SignalKind, to_id: str | None = None, **fields) -> None:
        await self._send_signal(SignalingMessage(kind=kind, to_id=to_id or self._peer_id, **fields))

    async def _reset(self) -> None:
        """Back to idle: duration zeroed, partially negotiated media discarded"""
        self._cancel_timeout()
        if self._media:
            await self._media.release()
        self._connected_at = None
        if self._state != CallState.IDLE:
            self._transition(CallState.IDLE)
        self._peer_id = None
        self._call_type = None

    def _arm_timeout(self) -> None:
        self._cancel_timeout()
        self._timeout_task = asyncio.create_task(self._expire(self._generation))

    def _cancel_timeout(self) -> None:
        task = self._timeout_task
        self._timeout_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _expire(self, generation: int) -> None:
        await asyncio.sleep(self._timeout)
        if generation != self._generation or self._state not in (CallState.CALLING, CallState.RINGING):
            return

        peer_id = self._peer_id
        was_calling = self._state == CallState.CALLING
        self._logger.info(f"Call with {peer_id} timed out after {self._timeout}s")
        await self._reset()
        kind = SignalKind.CANCEL if was_calling else SignalKind.REJECT
        try:
            await self._emit(kind, to_id=peer_id, reason="timeout")
        except Exception as e:
            self._logger.warning(f"Failed to signal call timeout to {peer_id}: {e}")
