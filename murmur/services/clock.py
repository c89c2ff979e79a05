"""
Trusted-time anchor for every timestamp the client produces.

A single offset between the local clock and a trusted remote clock is kept as
process-wide state. The last sample wins: there is no averaging or smoothing.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Callable

DEFAULT_DRIFT_THRESHOLD_MS = 5000


def _system_clock_ms() -> int:
    return time.time_ns() // 1_000_000


class ClockService:
    def __init__(
            self,
            local_clock: Callable[[], int] = _system_clock_ms,
            drift_threshold_ms: int = DEFAULT_DRIFT_THRESHOLD_MS,
            logger: logging.Logger | None = None
    ):
        self._local_clock = local_clock
        self._drift_threshold_ms = drift_threshold_ms
        self._logger = logger or logging.getLogger(__name__)
        self._offset = 0
        self._drift_listeners: list[Callable[[int], None]] = []

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def has_drift(self) -> bool:
        return abs(self._offset) > self._drift_threshold_ms

    def add_drift_listener(self, callback: Callable[[int], None]) -> None:
        self._drift_listeners.append(callback)

    def update_offset(self, trusted_timestamp: int) -> int:
        """
        Anchor to a trusted timestamp (unix ms). Replaces the previous offset.
        :return: the new offset in ms
        """
        self._offset = int(trusted_timestamp) - self._local_clock()

        if self.has_drift:
            self._logger.warning(
                f"Significant clock drift detected: {self._offset}ms",
                extra={"context": {"offset_ms": self._offset, "threshold_ms": self._drift_threshold_ms}}
            )
            for callback in list(self._drift_listeners):
                try:
                    callback(self._offset)
                except Exception as e:
                    self._logger.error(f"Drift listener failed: {e}", exc_info=True)

        return self._offset

    def now_ms(self) -> int:
        return self._local_clock() + self._offset

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.now_ms() / 1000, tz=timezone.utc)

    async def sync(self, time_dao) -> int:
        """Fetch one trusted sample over HTTP and apply it"""
        trusted = await time_dao.get_server_time()
        return self.update_offset(trusted)
