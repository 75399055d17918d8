from __future__ import annotations

import logging
from typing import Callable, Optional

from config_utils import SegmentationConfig
from errors import RecognitionError
from finalization_scheduler import FinalizationScheduler, TimerHandle, TimerScheduler
from language_detector import LanguageDetector, normalize_language_code, to_locale_tag
from metrics_reporter import SessionMetricsReporter
from stability_filter import StabilityFilter
from transcript_models import ProgressEvent, Recognizer, SessionState, TranscriptToken, Utterance
from utterance_buffer import UtteranceBuffer

TERMINATOR = "terminator"
SWITCH = "switch"
STOP = "stop"


class SessionController:
    """One two-party conversation: routes recognizer tokens into utterances.

    Recognizer callbacks and timer callbacks must arrive on the same event
    loop; nothing here is locked.
    """

    def __init__(
        self,
        recognizer: Recognizer,
        timers: TimerScheduler,
        config: Optional[SegmentationConfig] = None,
        detector: Optional[LanguageDetector] = None,
        on_interim_progress: Optional[Callable[[ProgressEvent], None]] = None,
        on_utterance_finalized: Optional[Callable[[Utterance], None]] = None,
        on_error: Optional[Callable[[RecognitionError], None]] = None,
        on_language_switch: Optional[Callable[[str, str], None]] = None,
        metrics_reporter: Optional[SessionMetricsReporter] = None,
    ) -> None:
        self._recognizer = recognizer
        self._timers = timers
        self._config = config or SegmentationConfig()
        self._detector = detector or LanguageDetector()
        self.on_interim_progress = on_interim_progress
        self.on_utterance_finalized = on_utterance_finalized
        self.on_error = on_error
        self.on_language_switch = on_language_switch
        self.metrics_reporter = metrics_reporter or SessionMetricsReporter()

        self.state: Optional[SessionState] = None
        self._languages: tuple[str, ...] = ()
        self._buffers: Optional[UtteranceBuffer] = None
        self._filter: Optional[StabilityFilter] = None
        self._finalizer: Optional[FinalizationScheduler] = None
        self._utterance_started_at: dict[str, float] = {}
        self._generation = 0
        self._restart_pending = False
        self._restart_handle: Optional[TimerHandle] = None

    @property
    def is_listening(self) -> bool:
        return self.state is not None and self.state.is_listening

    @property
    def active_language(self) -> Optional[str]:
        return self.state.active_language if self.state is not None else None

    @property
    def languages(self) -> tuple[str, ...]:
        return self._languages

    @property
    def buffers(self) -> Optional[UtteranceBuffer]:
        return self._buffers

    @property
    def stability_filter(self) -> Optional[StabilityFilter]:
        return self._filter

    @property
    def finalizer(self) -> Optional[FinalizationScheduler]:
        return self._finalizer

    def start(self, language1: str, language2: str) -> None:
        if self.is_listening:
            return
        first = normalize_language_code(language1)
        second = normalize_language_code(language2)
        if first == second:
            raise ValueError(f"Session languages must differ, got {first!r} twice.")

        self._languages = (first, second)
        self._buffers = UtteranceBuffer(
            self._languages,
            unspaced_languages=[language for language in self._languages if self._config.is_unspaced(language)],
            clock=self._timers.now,
        )
        self._filter = StabilityFilter(self._config.detection_window_size, self._config.switch_vote_threshold)
        self._finalizer = FinalizationScheduler(self._timers, self._config, self._on_timer_expired)
        self._utterance_started_at = {}
        self._restart_pending = False
        self._restart_handle = None
        self.state = SessionState(active_language=first, last_switch_time=None, is_listening=True)
        self.metrics_reporter.start_session(self._languages)

        if not self._start_recognizer(first):
            self.state.is_listening = False
            raise RecognitionError("unavailable", f"recognizer could not start for {to_locale_tag(first)}")
        logging.info("session_started languages=%s active=%s", ",".join(self._languages), first)

    def stop(self) -> None:
        state = self.state
        if state is None or not state.is_listening:
            return
        assert self._finalizer is not None and self._buffers is not None
        self._finalizer.cancel_everything()
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None
        self._restart_pending = False
        self._generation += 1
        state.is_listening = False

        for language in self._languages:
            self._finalize(language, STOP)
        self._buffers.clear_all()
        self._stop_recognizer()
        summary = self.metrics_reporter.finalize_session()
        logging.info(
            "session_stopped utterances=%d switches=%d dropped_tokens=%d",
            summary.get("utterances", 0),
            summary.get("switches", 0),
            summary.get("dropped_tokens", 0),
        )

    def handle_token(self, token: TranscriptToken) -> None:
        state = self.state
        if state is None or not state.is_listening:
            return
        if self._restart_pending:
            self._drop_token(token, "restart_pending")
            return
        text = (token.text or "").strip()
        if not text:
            return
        assert self._filter is not None

        now = self._timers.now()
        active = state.active_language
        detected = self._detector.verify_language(text, token.language_hint, active, self._languages)
        if detected not in self._languages:
            detected = active
        self._filter.push(detected)
        stable = self._filter.evaluate()
        if stable is not None and stable != active and self._switch_allowed(now):
            self._switch_language(stable, now)
            return

        if token.is_final:
            self._accept_final(active, text, now)
        else:
            self._accept_interim(active, text, now)

    def handle_error(self, error: Exception) -> None:
        if not isinstance(error, RecognitionError):
            error = RecognitionError("recognizer-failure", str(error))
        if error.is_benign:
            logging.debug("recognizer_signal_ignored code=%s", error.code)
            return
        self.metrics_reporter.record_error("recognition", str(error))
        logging.warning("recognizer_error code=%s message=%s", error.code, error.message)
        if self.on_error is None:
            raise error
        self.on_error(error)

    def _accept_interim(self, language: str, text: str, now: float) -> None:
        assert self._buffers is not None and self._finalizer is not None
        self._mark_utterance_start(language, now)
        self._buffers.set_pending_interim(language, text)
        self._emit_progress(text, language, now)
        self._finalizer.arm_pause(language)

    def _accept_final(self, language: str, text: str, now: float) -> None:
        assert self._buffers is not None and self._finalizer is not None
        self._mark_utterance_start(language, now)
        self._buffers.append(language, text)
        self._buffers.set_pending_interim(language, "")
        snapshot = self._buffers.snapshot(language)
        self._emit_progress(snapshot, language, now)
        if self._ends_with_terminator(language, snapshot):
            self._finalize(language, TERMINATOR)
        else:
            self._finalizer.arm_pause(language)

    def _mark_utterance_start(self, language: str, now: float) -> None:
        assert self._buffers is not None and self._finalizer is not None
        if self._buffers.is_empty(language):
            self._utterance_started_at[language] = now
            self._finalizer.arm_max(language)

    def _ends_with_terminator(self, language: str, text: str) -> bool:
        return bool(text) and text[-1] in self._config.terminators_for(language)

    def _finalize(self, language: str, reason: str) -> Optional[Utterance]:
        assert self._buffers is not None and self._finalizer is not None
        self._finalizer.cancel_all(language)
        committed = self._buffers.snapshot(language)
        interim = self._buffers.get_pending_interim(language)
        if reason == TERMINATOR:
            chosen = committed
        elif not committed or len(committed) < len(interim):
            # Recognizers that never send a final leave everything in the interim.
            chosen = interim
        else:
            chosen = committed
        started_at = self._utterance_started_at.pop(language, None)
        self._buffers.clear(language)

        text = chosen.strip()
        if not text:
            return None
        now = self._timers.now()
        utterance = Utterance(text=text, language=language, timestamp=now, reason=reason)
        latency = now - started_at if started_at is not None else 0.0
        self.metrics_reporter.record_utterance(language, reason, len(text), latency)
        logging.info("utterance_finalized language=%s reason=%s chars=%d", language, reason, len(text))
        if self.on_utterance_finalized is not None:
            self.on_utterance_finalized(utterance)
        return utterance

    def _on_timer_expired(self, language: str, kind: str) -> None:
        if not self.is_listening:
            return
        self._finalize(language, kind)

    def _switch_allowed(self, now: float) -> bool:
        assert self.state is not None
        last = self.state.last_switch_time
        return last is None or now - last >= self._config.min_switch_interval_seconds

    def _switch_language(self, language: str, now: float) -> None:
        state = self.state
        assert state is not None and self._finalizer is not None
        previous = state.active_language
        self._finalizer.cancel_everything()
        self._finalize(previous, SWITCH)
        if not state.is_listening:
            # on_utterance_finalized stopped the session.
            return
        state.active_language = language
        state.last_switch_time = now
        self.metrics_reporter.record_switch(previous, language)
        logging.info("language_switch from=%s to=%s", previous, language)
        if self.on_language_switch is not None:
            self.on_language_switch(previous, language)
        self._restart_recognizer(language)

    def _restart_recognizer(self, language: str) -> None:
        self._restart_pending = True
        self._generation += 1
        self._stop_recognizer()
        self._schedule_restart(language, attempt=1)

    def _schedule_restart(self, language: str, attempt: int) -> None:
        self._restart_handle = self._timers.call_later(
            self._config.restart_settle_seconds,
            lambda: self._complete_restart(language, attempt),
        )

    def _complete_restart(self, language: str, attempt: int) -> None:
        self._restart_handle = None
        state = self.state
        if state is None or not state.is_listening or state.active_language != language:
            return
        if self._start_recognizer(language):
            self._restart_pending = False
            logging.debug("recognizer_restarted language=%s attempt=%d", language, attempt)
            return
        if attempt < self._config.restart_attempts:
            logging.warning("recognizer_restart_retry language=%s attempt=%d", language, attempt)
            self._schedule_restart(language, attempt + 1)
            return
        self._restart_pending = False
        self.handle_error(
            RecognitionError("unavailable", f"recognizer did not restart for {to_locale_tag(language)}")
        )

    def _start_recognizer(self, language: str) -> bool:
        self._generation += 1
        generation = self._generation
        tag = to_locale_tag(language)
        try:
            started = self._recognizer.start(
                tag,
                lambda token: self._on_recognizer_token(generation, token),
                lambda token: self._on_recognizer_token(generation, token),
                lambda error: self._on_recognizer_error(generation, error),
            )
        except Exception as exc:  # noqa: BLE001 - recognizer boundary
            logging.warning("recognizer_start_failed language=%s error=%s", tag, exc)
            return False
        return bool(started)

    def _stop_recognizer(self) -> None:
        try:
            self._recognizer.stop()
        except Exception as exc:  # noqa: BLE001 - recognizer boundary
            logging.warning("recognizer_stop_failed error=%s", exc)

    def _on_recognizer_token(self, generation: int, token: TranscriptToken) -> None:
        if generation != self._generation:
            self._drop_token(token, "stale_recognizer")
            return
        self.handle_token(token)

    def _on_recognizer_error(self, generation: int, error: Exception) -> None:
        if generation != self._generation:
            return
        self.handle_error(error)

    def _emit_progress(self, text: str, language: str, now: float) -> None:
        if self.on_interim_progress is None:
            return
        self.on_interim_progress(ProgressEvent(text=text, language=language, timestamp=now))

    def _drop_token(self, token: TranscriptToken, reason: str) -> None:
        self.metrics_reporter.record_dropped_token()
        logging.debug("token_dropped reason=%s final=%s text=%r", reason, token.is_final, token.text[:60])
