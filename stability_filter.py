from __future__ import annotations

from collections import Counter, deque
from typing import Optional


class StabilityFilter:
    """Majority vote over the last ``window_size`` detections.

    ``evaluate`` only answers once the window holds at least ``threshold``
    entries and the leading language has at least ``threshold`` votes. The
    minimum interval between switches is the caller's concern.
    """

    def __init__(self, window_size: int = 5, threshold: int = 3) -> None:
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        if not 1 <= threshold <= window_size:
            raise ValueError("threshold must be between 1 and window_size")
        self._threshold = threshold
        self._window: deque[str] = deque(maxlen=window_size)

    @property
    def window(self) -> tuple[str, ...]:
        return tuple(self._window)

    @property
    def window_size(self) -> int:
        return self._window.maxlen or 0

    def push(self, language: str) -> None:
        self._window.append(language)

    def evaluate(self) -> Optional[str]:
        if len(self._window) < self._threshold:
            return None
        # most_common keeps first-seen order on ties, so the older language wins.
        language, votes = Counter(self._window).most_common(1)[0]
        if votes >= self._threshold:
            return language
        return None

    def reset(self) -> None:
        self._window.clear()
