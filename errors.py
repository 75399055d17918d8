from __future__ import annotations

from typing import Final


class RecognitionError(RuntimeError):
    """Failure reported by the upstream recognizer.

    ``no-speech`` and ``aborted`` are ordinary silence/cancellation signals and
    are flagged as benign; the session controller ignores those.
    """

    BENIGN_CODES: Final[frozenset[str]] = frozenset({"no-speech", "aborted"})

    def __init__(self, code: str, message: str = "") -> None:
        self.code = (code or "unknown").strip().lower()
        self.message = message or self.code
        super().__init__(f"Speech recognition: {self.message}")

    @property
    def is_benign(self) -> bool:
        return self.code in self.BENIGN_CODES


class TranslationError(RuntimeError):
    def __init__(self, message: str, source_lang: str = "", target_lang: str = "") -> None:
        self.source_lang = source_lang
        self.target_lang = target_lang
        super().__init__(message)
