from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Iterable


def read_float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def read_int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def read_bool_env(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return default


def read_str_env(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    # Terminator sets may legitimately contain spaces, so only strip newlines.
    value = raw.strip("\r\n")
    return value if value.strip() else default


def read_csv_env(name: str, default: Iterable[str]) -> tuple[str, ...]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return tuple(default)
    items = tuple(part.strip().lower() for part in raw.split(",") if part.strip())
    return items or tuple(default)


_UNSPACED_TERMINATORS = "。．！？!?…"
_SPACED_TERMINATORS = ".!?…"


@dataclass
class SegmentationConfig:
    default_pause_seconds: float = 1.8
    pause_seconds: dict[str, float] = field(default_factory=lambda: {"ja": 3.0, "zh": 3.0})
    max_utterance_seconds: float = 10.0
    default_terminators: str = _SPACED_TERMINATORS
    terminators: dict[str, str] = field(
        default_factory=lambda: {"ja": _UNSPACED_TERMINATORS, "zh": _UNSPACED_TERMINATORS}
    )
    unspaced_languages: frozenset[str] = frozenset({"ja", "zh", "th"})
    detection_window_size: int = 5
    switch_vote_threshold: int = 3
    min_switch_interval_seconds: float = 1.2
    restart_settle_seconds: float = 0.08
    restart_attempts: int = 3

    def __post_init__(self) -> None:
        if self.detection_window_size < 1:
            raise ValueError("detection_window_size must be >= 1")
        if not 1 <= self.switch_vote_threshold <= self.detection_window_size:
            raise ValueError("switch_vote_threshold must be between 1 and detection_window_size")

    def pause_for(self, language: str) -> float:
        return self.pause_seconds.get(language, self.default_pause_seconds)

    def terminators_for(self, language: str) -> str:
        return self.terminators.get(language, self.default_terminators)

    def is_unspaced(self, language: str) -> bool:
        return language in self.unspaced_languages

    @classmethod
    def from_env(cls, languages: Iterable[str] = ("vi", "ja")) -> "SegmentationConfig":
        base = cls()
        pause_seconds = dict(base.pause_seconds)
        terminators = dict(base.terminators)
        for language in languages:
            suffix = language.upper().replace("-", "_")
            pause_seconds[language] = read_float_env(f"PAUSE_SECONDS_{suffix}", base.pause_for(language))
            terminators[language] = read_str_env(f"TERMINATORS_{suffix}", base.terminators_for(language))
        return cls(
            default_pause_seconds=read_float_env("DEFAULT_PAUSE_SECONDS", base.default_pause_seconds),
            pause_seconds=pause_seconds,
            max_utterance_seconds=read_float_env("MAX_UTTERANCE_SECONDS", base.max_utterance_seconds),
            default_terminators=read_str_env("DEFAULT_TERMINATORS", base.default_terminators),
            terminators=terminators,
            unspaced_languages=frozenset(read_csv_env("UNSPACED_LANGUAGES", sorted(base.unspaced_languages))),
            detection_window_size=read_int_env("DETECTION_WINDOW_SIZE", base.detection_window_size),
            switch_vote_threshold=read_int_env("SWITCH_VOTE_THRESHOLD", base.switch_vote_threshold),
            min_switch_interval_seconds=read_float_env(
                "MIN_SWITCH_INTERVAL_SECONDS", base.min_switch_interval_seconds
            ),
            restart_settle_seconds=read_float_env("RECOGNIZER_RESTART_DELAY_SECONDS", base.restart_settle_seconds),
            restart_attempts=read_int_env("RECOGNIZER_RESTART_ATTEMPTS", base.restart_attempts),
        )
