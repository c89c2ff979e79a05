import asyncio
import json
import logging
import ssl
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

import websockets

from murmur.exceptions import NetworkError

EventHandler = Callable[[str], Awaitable[None]]


class AbstractTransport(ABC):
    """Outbound seam towards the relay: chat messages, acks, friend events and call signaling"""

    @abstractmethod
    async def send(self, event: dict[str, Any]) -> None:
        """Raises NetworkError when the event could not be handed to the relay"""
        raise NotImplementedError()


class WebSocketDAO(AbstractTransport):
    def __init__(self, base_ws_url: str, logger: logging.Logger | None = None, verify: bool = True):
        self.base_ws_url = base_ws_url.rstrip('/')
        self.verify = verify

        self._logger = logger or logging.getLogger(__name__)
        self._websocket = None
        self._is_connected = False
        self._reconnect_delay = 1
        self._max_reconnect_delay = 30
        self._current_account_id: str | None = None
        self._should_reconnect = True

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    async def connect(self, account_id: str) -> bool:
        self._current_account_id = account_id
        try:
            ssl_context = None
            if self.base_ws_url.startswith("wss://"):
                ssl_context = ssl.create_default_context()
                if not self.verify:
                    ssl_context.check_hostname = False
                    ssl_context.verify_mode = ssl.CERT_NONE

            url = f"{self.base_ws_url}/ws?account_id={account_id}"
            self._websocket = await websockets.connect(
                url,
                ping_interval=20,
                ping_timeout=10,
                close_timeout=10,
                ssl=ssl_context
            )
            self._is_connected = True
            self._reconnect_delay = 1
            self._logger.info("WebSocket connected successfully")
            return True
        except (OSError, websockets.exceptions.WebSocketException) as e:
            self._logger.error(f"WebSocket connection failed: {e}")
            return False

    async def listen(self, handler: EventHandler):
        """Feed every inbound frame to handler, reconnecting with exponential backoff"""
        while self._should_reconnect:
            if not self._is_connected and self._current_account_id:
                success = await self.connect(self._current_account_id)
                if not success:
                    delay = min(self._reconnect_delay, self._max_reconnect_delay)
                    self._logger.info(f"Reconnecting in {delay} seconds...")
                    await asyncio.sleep(delay)
                    self._reconnect_delay *= 2
                    continue

            try:
                async for frame in self._websocket:
                    await handler(frame)
            except websockets.exceptions.ConnectionClosed:
                self._logger.warning("WebSocket connection closed")
                self._is_connected = False
            except websockets.exceptions.WebSocketException as e:
                self._logger.error(f"WebSocket error: {e}")
                self._is_connected = False
            else:
                self._is_connected = False

    async def send(self, event: dict[str, Any]) -> None:
        if not self._is_connected or not self._websocket:
            raise NetworkError("WebSocket is not connected", context={"event_type": event.get("type")})

        try:
            await self._websocket.send(json.dumps(event))
        except websockets.exceptions.WebSocketException as e:
            self._is_connected = False
            raise NetworkError(
                "Error sending WebSocket event",
                original_error=e,
                context={"event_type": event.get("type")}
            ) from e

    async def disconnect(self):
        self._should_reconnect = False
        self._is_connected = False
        if self._websocket:
            await self._websocket.close()
            self._websocket = None
        self._logger.info("WebSocket disconnected")
