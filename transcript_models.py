from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Protocol


@dataclass(frozen=True)
class TranscriptToken:
    text: str
    is_final: bool
    timestamp: float
    language_hint: str = ""


@dataclass(frozen=True)
class ProgressEvent:
    text: str
    language: str
    timestamp: float


@dataclass(frozen=True)
class Utterance:
    text: str
    language: str
    timestamp: float
    reason: str = "terminator"


@dataclass
class SessionState:
    active_language: str
    last_switch_time: Optional[float] = None
    is_listening: bool = False


TokenCallback = Callable[[TranscriptToken], None]
ErrorCallback = Callable[[Exception], None]


class Recognizer(Protocol):
    """Upstream speech-to-text source.

    ``start`` returns ``False`` when the recognizer is unsupported or
    unavailable. Restarting after the remote side ends a stream is the
    recognizer's own business.
    """

    def start(
        self,
        language_tag: str,
        on_interim: TokenCallback,
        on_final: TokenCallback,
        on_error: ErrorCallback,
    ) -> bool: ...

    def stop(self) -> None: ...
