from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import numpy as np
from openai import AsyncOpenAI

from config_utils import read_float_env, read_int_env
from errors import RecognitionError
from language_detector import normalize_language_code
from transcript_models import ErrorCallback, TokenCallback, TranscriptToken


class RealtimeRecognizer:
    """Recognizer backed by an OpenAI realtime transcription session.

    Audio comes from the host application through ``append_audio``. Deltas are
    merged per item and reported as interim tokens carrying the whole
    hypothesis so far; ``completed`` events are reported as final tokens.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini-transcribe",
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._api_key = api_key or os.getenv("OPENAI_API_KEY")
        self._client: Optional[AsyncOpenAI] = AsyncOpenAI(api_key=self._api_key) if self._api_key else None
        primary_session_model = os.getenv("REALTIME_SESSION_MODEL", "gpt-realtime-mini").strip() or "gpt-realtime-mini"
        fallback_session_model = os.getenv("REALTIME_SESSION_FALLBACK_MODEL", "gpt-realtime").strip() or "gpt-realtime"
        self._session_models = [primary_session_model]
        if fallback_session_model and fallback_session_model not in self._session_models:
            self._session_models.append(fallback_session_model)
        primary_model = os.getenv("TRANSCRIPTION_MODEL", model).strip() or model
        fallback_model = os.getenv("TRANSCRIPTION_FALLBACK_MODEL", "whisper-1").strip() or "whisper-1"
        self._models = [primary_model]
        if fallback_model and fallback_model not in self._models:
            self._models.append(fallback_model)
        self._active_session_model_index = 0
        self._active_model_index = 0
        self._base_prompt = (os.getenv("TRANSCRIPTION_BASE_PROMPT") or "").strip()
        self._vad_threshold = read_float_env("REALTIME_VAD_THRESHOLD", 0.45)
        self._vad_prefix_padding_ms = read_int_env("REALTIME_VAD_PREFIX_MS", 220)
        self._vad_silence_duration_ms = read_int_env("REALTIME_VAD_SILENCE_MS", 220)
        self._reconnect_delay = read_float_env("REALTIME_RECONNECT_DELAY_SECONDS", 0.12)
        self._loop = loop
        self._connection = None
        self._session_task: Optional[asyncio.Task[None]] = None
        self._language_tag = ""
        self._on_interim: Optional[TokenCallback] = None
        self._on_final: Optional[TokenCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._preview_text_by_item: dict[str, str] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(
        self,
        language_tag: str,
        on_interim: TokenCallback,
        on_final: TokenCallback,
        on_error: ErrorCallback,
    ) -> bool:
        if self._client is None:
            logging.warning("realtime_recognizer_unavailable reason=missing_api_key")
            return False
        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logging.warning("realtime_recognizer_unavailable reason=no_event_loop")
                return False
            self._loop = loop
        if self._running:
            self.stop()
        self._language_tag = language_tag
        self._on_interim = on_interim
        self._on_final = on_final
        self._on_error = on_error
        self._preview_text_by_item.clear()
        self._running = True
        self._session_task = loop.create_task(self._run_session(), name="realtime-recognizer")
        return True

    def stop(self) -> None:
        self._running = False
        task = self._session_task
        self._session_task = None
        if task is not None and not task.done():
            task.cancel()
        self._preview_text_by_item.clear()

    async def append_audio(self, samples: np.ndarray, sample_rate: int) -> None:
        if not self._running or self._connection is None:
            return
        pcm16_bytes = self._to_pcm16_24khz(samples, sample_rate)
        await self._connection.input_audio_buffer.append(audio=base64.b64encode(pcm16_bytes).decode("ascii"))

    async def _run_session(self) -> None:
        while self._running:
            connection = None
            try:
                connection = await self._connect()
                self._connection = connection
                async for event in connection:
                    self._dispatch_event(event)
            except asyncio.CancelledError:
                raise
            except RecognitionError as exc:
                self._fail(exc)
                return
            except Exception as exc:  # noqa: BLE001 - realtime boundary
                self._fail(RecognitionError("network", str(exc)))
                return
            finally:
                if connection is not None:
                    if self._connection is connection:
                        self._connection = None
                    with suppress(Exception):
                        await connection.close()
            if not self._running:
                return
            # The server closes idle streams; reopen in the same language.
            logging.info(
                "realtime_recognizer_reconnecting language=%s delay_s=%.2f",
                self._language_tag,
                self._reconnect_delay,
            )
            self._preview_text_by_item.clear()
            await asyncio.sleep(self._reconnect_delay)

    def _fail(self, error: RecognitionError) -> None:
        self._report_error(error)
        self._running = False

    async def _connect(self):
        assert self._client is not None
        last_error: Optional[Exception] = None
        for session_model_index in range(self._active_session_model_index, len(self._session_models)):
            session_model_name = self._session_models[session_model_index]
            for model_index in range(self._active_model_index, len(self._models)):
                model_name = self._models[model_index]
                connection = None
                try:
                    connection = await self._client.realtime.connect(model=session_model_name).enter()
                    await connection.session.update(session=self._session_config(model_name))
                    self._active_session_model_index = session_model_index
                    self._active_model_index = model_index
                    logging.info(
                        "realtime_recognizer_connected session_model=%s model=%s language=%s",
                        session_model_name,
                        model_name,
                        self._language_tag,
                    )
                    return connection
                except Exception as exc:  # noqa: BLE001 - realtime startup boundary
                    last_error = exc
                    if connection is not None:
                        with suppress(Exception):
                            await connection.close()
        raise RecognitionError("service-not-allowed", f"all configured models failed: {last_error}")

    def _session_config(self, model_name: str) -> dict[str, Any]:
        transcription_config: dict[str, Any] = {"model": model_name}
        language = normalize_language_code(self._language_tag)
        if language != "unknown":
            transcription_config["language"] = language
        if self._base_prompt:
            transcription_config["prompt"] = self._base_prompt
        return {
            "type": "transcription",
            "audio": {
                "input": {
                    "format": {"type": "audio/pcm", "rate": 24000},
                    "transcription": transcription_config,
                    "turn_detection": {
                        "type": "server_vad",
                        "prefix_padding_ms": self._vad_prefix_padding_ms,
                        "silence_duration_ms": self._vad_silence_duration_ms,
                        "threshold": self._vad_threshold,
                    },
                }
            },
        }

    def _dispatch_event(self, event) -> None:
        event_type = getattr(event, "type", "")
        if event_type == "conversation.item.input_audio_transcription.delta":
            self._handle_delta_event(event)
        elif event_type == "conversation.item.input_audio_transcription.completed":
            self._handle_completed_event(event)
        elif event_type == "conversation.item.input_audio_transcription.failed":
            message = getattr(getattr(event, "error", None), "message", None) or "Realtime transcription failed"
            self._preview_text_by_item.pop(getattr(event, "item_id", "") or "", None)
            self._report_error(RecognitionError("transcription-failed", str(message)))
        elif event_type == "error":
            error = getattr(event, "error", None)
            code = getattr(error, "code", None) or "network"
            message = getattr(error, "message", None) or "Unknown realtime transcription error"
            self._report_error(RecognitionError(self._map_error_code(str(code)), str(message)))

    def _handle_delta_event(self, event) -> None:
        item_id = getattr(event, "item_id", "") or ""
        delta = getattr(event, "delta", None) or ""
        if not item_id or not delta.strip():
            return
        merged = self._merge_preview_text(self._preview_text_by_item.get(item_id, ""), delta)
        self._preview_text_by_item[item_id] = merged
        if self._running and self._on_interim is not None:
            self._on_interim(self._token(merged, is_final=False))

    def _handle_completed_event(self, event) -> None:
        item_id = getattr(event, "item_id", "") or ""
        transcript = (getattr(event, "transcript", None) or "").strip()
        self._preview_text_by_item.pop(item_id, None)
        if not transcript:
            return
        if self._running and self._on_final is not None:
            self._on_final(self._token(transcript, is_final=True))

    def _report_error(self, error: RecognitionError) -> None:
        logging.warning("realtime_recognizer_error code=%s message=%s", error.code, error.message)
        if self._running and self._on_error is not None:
            self._on_error(error)

    def _token(self, text: str, is_final: bool) -> TranscriptToken:
        timestamp = self._loop.time() if self._loop is not None else 0.0
        return TranscriptToken(text=text, is_final=is_final, timestamp=timestamp, language_hint=self._language_tag)

    @staticmethod
    def _map_error_code(code: str) -> str:
        lowered = code.strip().lower()
        if lowered in {"input_audio_buffer_commit_empty", "no_speech"}:
            return "no-speech"
        if lowered in {"response_cancel_not_active", "cancelled", "canceled"}:
            return "aborted"
        return lowered.replace("_", "-") or "network"

    @staticmethod
    def _merge_preview_text(current: str, delta: str) -> str:
        current = " ".join((current or "").split())
        delta = " ".join((delta or "").split())
        if not current:
            return delta
        if not delta:
            return current
        if delta in current:
            return current
        return f"{current}{delta}" if current.endswith(("-", "/")) else f"{current} {delta}".strip()

    @staticmethod
    def _to_pcm16_24khz(samples: np.ndarray, sample_rate: int) -> bytes:
        mono = np.asarray(samples, dtype=np.float32).reshape(-1)
        if sample_rate != 24000:
            target_len = max(1, int(round(mono.shape[0] * 24000 / sample_rate)))
            src_x = np.linspace(0.0, 1.0, num=mono.shape[0], endpoint=False)
            dst_x = np.linspace(0.0, 1.0, num=target_len, endpoint=False)
            mono = np.interp(dst_x, src_x, mono).astype(np.float32)
        clamped = np.clip(mono, -1.0, 1.0)
        return (clamped * 32767).astype(np.int16).tobytes()


@dataclass(frozen=True)
class ReplayEntry:
    at: float
    text: str = ""
    is_final: bool = False
    error: str = ""


def load_transcript(path: str | Path) -> list[ReplayEntry]:
    """Read a JSONL transcript: ``{"at": 0.4, "text": "xin", "final": true}`` per line.

    A line may carry ``"error": "<code>"`` instead of text to replay a
    recognizer error.
    """
    entries: list[ReplayEntry] = []
    with Path(path).open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            try:
                payload = json.loads(stripped)
                entry = ReplayEntry(
                    at=float(payload["at"]),
                    text=str(payload.get("text", "") or ""),
                    is_final=bool(payload.get("final", False)),
                    error=str(payload.get("error", "") or ""),
                )
            except (ValueError, KeyError, TypeError) as exc:
                raise ValueError(f"{path}:{line_number}: invalid transcript entry: {exc}") from exc
            entries.append(entry)
    entries.sort(key=lambda item: item.at)
    return entries


class ReplayRecognizer:
    """Plays a recorded transcript back on the event loop in real time.

    The timeline keeps running across ``stop``/``start`` pairs, so entries
    that fall into a restart gap are lost just as live speech would be.
    """

    def __init__(
        self,
        entries: list[ReplayEntry],
        loop: Optional[asyncio.AbstractEventLoop] = None,
        speed: float = 1.0,
    ) -> None:
        self._entries = list(entries)
        self._loop = loop
        self._speed = speed if speed > 0 else 1.0
        self._origin: Optional[float] = None
        self._handles: list[asyncio.TimerHandle] = []
        self._language_tag = ""

    @property
    def duration(self) -> float:
        if not self._entries:
            return 0.0
        return self._entries[-1].at / self._speed

    def start(
        self,
        language_tag: str,
        on_interim: TokenCallback,
        on_final: TokenCallback,
        on_error: ErrorCallback,
    ) -> bool:
        loop = self._loop or asyncio.get_running_loop()
        self._loop = loop
        self.stop()
        now = loop.time()
        if self._origin is None:
            self._origin = now
        self._language_tag = language_tag
        elapsed = now - self._origin
        for entry in self._entries:
            delay = entry.at / self._speed - elapsed
            if delay < 0:
                continue
            self._handles.append(loop.call_later(delay, self._emit, entry, on_interim, on_final, on_error))
        return True

    def stop(self) -> None:
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()

    def _emit(
        self,
        entry: ReplayEntry,
        on_interim: TokenCallback,
        on_final: TokenCallback,
        on_error: ErrorCallback,
    ) -> None:
        if entry.error:
            on_error(RecognitionError(entry.error))
            return
        assert self._loop is not None
        token = TranscriptToken(
            text=entry.text,
            is_final=entry.is_final,
            timestamp=self._loop.time(),
            language_hint=self._language_tag,
        )
        (on_final if entry.is_final else on_interim)(token)
