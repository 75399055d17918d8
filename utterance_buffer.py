from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable


@dataclass
class LanguageBuffer:
    accumulated_text: str = ""
    pending_interim: str = ""
    last_update: float = 0.0


class UtteranceBuffer:
    """Per-language accumulation of final fragments.

    Interim recognizer output lives in ``pending_interim`` and is never merged
    into ``accumulated_text``; recognizers resend the whole interim hypothesis,
    so merging it would duplicate words once the final arrives.
    """

    def __init__(
        self,
        languages: Iterable[str],
        unspaced_languages: Iterable[str] = ("ja", "zh", "th"),
        clock: Callable[[], float] = lambda: 0.0,
    ) -> None:
        self._buffers: dict[str, LanguageBuffer] = {language: LanguageBuffer() for language in languages}
        if not self._buffers:
            raise ValueError("at least one language is required")
        self._unspaced = frozenset(unspaced_languages)
        self._clock = clock

    @property
    def languages(self) -> tuple[str, ...]:
        return tuple(self._buffers)

    def append(self, language: str, piece: str) -> None:
        buffer = self._buffers[language]
        cleaned = (piece or "").strip()
        if not cleaned:
            return
        if language in self._unspaced:
            buffer.accumulated_text += cleaned
        else:
            if buffer.accumulated_text and not buffer.accumulated_text[-1].isspace():
                buffer.accumulated_text += " "
            buffer.accumulated_text += cleaned
        buffer.last_update = self._clock()

    def snapshot(self, language: str) -> str:
        return self._buffers[language].accumulated_text.strip()

    def set_pending_interim(self, language: str, text: str) -> None:
        buffer = self._buffers[language]
        buffer.pending_interim = (text or "").strip()
        buffer.last_update = self._clock()

    def get_pending_interim(self, language: str) -> str:
        return self._buffers[language].pending_interim

    def last_update(self, language: str) -> float:
        return self._buffers[language].last_update

    def is_empty(self, language: str) -> bool:
        return not self.snapshot(language) and not self.get_pending_interim(language)

    def clear(self, language: str) -> None:
        buffer = self._buffers[language]
        buffer.accumulated_text = ""
        buffer.pending_interim = ""

    def clear_all(self) -> None:
        for language in self._buffers:
            self.clear(language)
