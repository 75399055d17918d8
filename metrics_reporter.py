from __future__ import annotations

import json
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional


def _percentile(values: list[float], ratio: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    if len(ordered) == 1:
        return ordered[0]
    index = (len(ordered) - 1) * ratio
    lower = int(index)
    upper = min(lower + 1, len(ordered) - 1)
    if lower == upper:
        return ordered[lower]
    weight = index - lower
    return ordered[lower] * (1.0 - weight) + ordered[upper] * weight


class SessionMetricsReporter:
    """Counts what the segmenter did during one session.

    Counters are always kept in memory for ``snapshot``; the JSONL event log
    and the summary file are only written when ``enabled``.
    """

    def __init__(
        self,
        enabled: bool = False,
        output_path: str = "./reports/segmentation_events.jsonl",
        summary_path: str = "./reports/segmentation_summary.json",
        append_mode: bool = False,
    ) -> None:
        self._enabled = enabled
        self._output_path = Path(output_path)
        self._summary_path = Path(summary_path)
        self._append_mode = append_mode
        self._session_started_at: Optional[datetime] = None
        self._languages: tuple[str, ...] = ()
        self._latencies: list[float] = []
        self._utterances_by_language: Counter[str] = Counter()
        self._finalize_reasons: Counter[str] = Counter()
        self._switches = 0
        self._dropped_tokens = 0
        self._errors_by_stage: Counter[str] = Counter()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start_session(self, languages: Iterable[str] = ()) -> None:
        self._session_started_at = datetime.now()
        self._languages = tuple(languages)
        self._latencies.clear()
        self._utterances_by_language.clear()
        self._finalize_reasons.clear()
        self._switches = 0
        self._dropped_tokens = 0
        self._errors_by_stage.clear()
        if not self._enabled:
            return
        self._ensure_parent_dirs()
        if not self._append_mode:
            self._output_path.write_text("", encoding="utf-8")

    def record_utterance(self, language: str, reason: str, text_length: int, latency_s: float) -> None:
        self._utterances_by_language[language] += 1
        self._finalize_reasons[reason] += 1
        self._latencies.append(max(0.0, latency_s))
        self._append_jsonl(
            {
                "event_type": "utterance",
                "recorded_at": datetime.now().isoformat(timespec="milliseconds"),
                "language": language,
                "reason": reason,
                "text_length": text_length,
                "latency_s": latency_s,
            }
        )

    def record_switch(self, from_language: str, to_language: str) -> None:
        self._switches += 1
        self._append_jsonl(
            {
                "event_type": "switch",
                "recorded_at": datetime.now().isoformat(timespec="milliseconds"),
                "from": from_language,
                "to": to_language,
            }
        )

    def record_dropped_token(self) -> None:
        self._dropped_tokens += 1

    def record_error(self, stage: str, error: str) -> None:
        self._errors_by_stage[stage] += 1
        self._append_jsonl(
            {
                "event_type": "error",
                "recorded_at": datetime.now().isoformat(timespec="milliseconds"),
                "stage": stage,
                "error": error,
            }
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "utterances": sum(self._utterances_by_language.values()),
            "utterances_by_language": dict(self._utterances_by_language),
            "finalize_reasons": dict(self._finalize_reasons),
            "switches": self._switches,
            "dropped_tokens": self._dropped_tokens,
            "errors_by_stage": dict(self._errors_by_stage),
            "avg_latency_s": (sum(self._latencies) / len(self._latencies)) if self._latencies else 0.0,
            "p95_latency_s": _percentile(self._latencies, 0.95),
        }

    def finalize_session(self) -> dict[str, Any]:
        now = datetime.now()
        started = self._session_started_at or now
        summary = {
            "session_started_at": started.isoformat(timespec="milliseconds"),
            "session_ended_at": now.isoformat(timespec="milliseconds"),
            "session_duration_s": max(0.0, (now - started).total_seconds()),
            "languages": list(self._languages),
            **self.snapshot(),
            "latency_p50_s": _percentile(self._latencies, 0.50),
            "latency_max_s": max(self._latencies) if self._latencies else 0.0,
        }
        if self._enabled:
            self._write_summary(summary)
        return summary

    def _ensure_parent_dirs(self) -> None:
        self._output_path.parent.mkdir(parents=True, exist_ok=True)
        self._summary_path.parent.mkdir(parents=True, exist_ok=True)

    def _append_jsonl(self, payload: dict[str, Any]) -> None:
        if not self._enabled:
            return
        self._ensure_parent_dirs()
        line = json.dumps(payload, ensure_ascii=False)
        with self._output_path.open("a", encoding="utf-8") as handle:
            handle.write(line)
            handle.write("\n")

    def _write_summary(self, summary: dict[str, Any]) -> None:
        self._ensure_parent_dirs()
        with self._summary_path.open("w", encoding="utf-8") as handle:
            json.dump(summary, handle, ensure_ascii=False, indent=2)
