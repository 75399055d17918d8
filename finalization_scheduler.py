from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol

from config_utils import SegmentationConfig

PAUSE = "pause"
MAX_DURATION = "max_duration"


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class TimerScheduler(Protocol):
    """Clock plus "run this after a delay" capability, injectable for tests."""

    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopTimerScheduler:
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(max(0.0, delay), callback)


class FinalizationScheduler:
    """Owns the pause and max-duration timers of the active language.

    At most one timer of each kind is outstanding; arming one replaces the
    previous timer of that kind even if it belonged to another language.
    """

    def __init__(
        self,
        timers: TimerScheduler,
        config: SegmentationConfig,
        on_timeout: Callable[[str, str], None],
    ) -> None:
        self._timers = timers
        self._config = config
        self._on_timeout = on_timeout
        self._pending: dict[str, tuple[str, TimerHandle, int]] = {}
        self._serial = 0

    def arm_pause(self, language: str) -> None:
        self._arm(PAUSE, language, self._config.pause_for(language))

    def arm_max(self, language: str) -> None:
        self._arm(MAX_DURATION, language, self._config.max_utterance_seconds)

    def has_pending(self, kind: str, language: Optional[str] = None) -> bool:
        entry = self._pending.get(kind)
        if entry is None:
            return False
        return language is None or entry[0] == language

    def cancel_all(self, language: str) -> None:
        for kind in (PAUSE, MAX_DURATION):
            entry = self._pending.get(kind)
            if entry is not None and entry[0] == language:
                self._cancel(kind)

    def cancel_everything(self) -> None:
        for kind in (PAUSE, MAX_DURATION):
            self._cancel(kind)

    def _arm(self, kind: str, language: str, delay: float) -> None:
        self._cancel(kind)
        self._serial += 1
        serial = self._serial
        handle = self._timers.call_later(delay, lambda: self._fire(kind, serial))
        self._pending[kind] = (language, handle, serial)

    def _cancel(self, kind: str) -> None:
        entry = self._pending.pop(kind, None)
        if entry is not None:
            entry[1].cancel()

    def _fire(self, kind: str, serial: int) -> None:
        entry = self._pending.get(kind)
        if entry is None or entry[2] != serial:
            return
        language = entry[0]
        del self._pending[kind]
        logging.debug("finalize_timer_fired kind=%s language=%s", kind, language)
        self._on_timeout(language, kind)
