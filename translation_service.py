from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import Callable, Final, Optional

from openai import APIStatusError, AsyncOpenAI

from config_utils import read_float_env, read_int_env
from errors import TranslationError
from language_detector import normalize_language_code
from metrics_reporter import SessionMetricsReporter
from transcript_models import Utterance


class TranslationService:
    _LANGUAGE_NAMES: Final[dict[str, str]] = {
        "ja": "Japanese",
        "vi": "Vietnamese",
        "en": "English",
        "ko": "Korean",
        "zh": "Chinese",
    }

    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-4o-mini") -> None:
        key = api_key or os.getenv("OPENAI_API_KEY")
        if not key:
            raise RuntimeError("OPENAI_API_KEY is required for translation.")
        self._client = AsyncOpenAI(api_key=key, timeout=read_float_env("TRANSLATION_TIMEOUT_SECONDS", 30.0))
        primary_model = os.getenv("TRANSLATION_MODEL", model).strip() or model
        fallback_model = os.getenv("TRANSLATION_FALLBACK_MODEL", "gpt-4.1-mini").strip()
        self._models = [primary_model]
        if fallback_model and fallback_model not in self._models:
            self._models.append(fallback_model)
        self._active_model_index = 0
        self._max_completion_tokens = read_int_env("TRANSLATION_MAX_TOKENS", 200)
        self._temperature = read_float_env("TRANSLATION_TEMPERATURE", 0.3)

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        cleaned = self._sanitize(text)
        if not cleaned:
            return ""
        source_name = self.language_name(source_lang)
        target_name = self.language_name(target_lang)
        if normalize_language_code(source_lang) == normalize_language_code(target_lang):
            return cleaned
        system_prompt = (
            f"You translate a live two-person conversation between {source_name} and {target_name} speakers.\n"
            "Input is speech-recognition output and may lack punctuation. No video content.\n"
            "Return only the translation, no explanations."
        )
        user_prompt = f"Translate the following {source_name} text to {target_name}:\n\n{cleaned}"
        try:
            return await self._chat(user_prompt, system_prompt)
        except TranslationError:
            raise
        except Exception as exc:  # noqa: BLE001 - API boundary
            raise TranslationError(f"translation_failed: {exc}", source_lang, target_lang) from exc

    @classmethod
    def language_name(cls, code: str) -> str:
        normalized = normalize_language_code(code)
        return cls._LANGUAGE_NAMES.get(normalized, code)

    async def _chat(self, user_prompt: str, system_prompt: str) -> str:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        last_exc: Optional[Exception] = None
        while self._active_model_index < len(self._models):
            model_name = self._models[self._active_model_index]
            try:
                response = await self._client.chat.completions.create(
                    model=model_name,
                    temperature=self._temperature,
                    messages=messages,
                    max_tokens=self._max_completion_tokens,
                )
                content = response.choices[0].message.content or ""
                return self._sanitize(content)
            except APIStatusError as exc:
                last_exc = exc
                # Promote to fallback model once and keep it for subsequent requests.
                if exc.status_code in (400, 404):
                    self._active_model_index += 1
                    continue
                break
            except Exception as exc:  # noqa: BLE001 - API boundary
                last_exc = exc
                break
        raise TranslationError(f"Translation API failed with all configured models: {last_exc}") from last_exc

    @staticmethod
    def _sanitize(text: str) -> str:
        return re.sub(r"\s+", " ", text or "").strip()


class ConversationTranslator:
    """Translates each finalized utterance into the other party's language.

    Failures stay here: they are logged, counted and reported through
    ``on_failed``; the segmentation engine never sees them.
    """

    def __init__(
        self,
        service: TranslationService,
        languages: tuple[str, str],
        on_translated: Optional[Callable[[Utterance, str], None]] = None,
        on_failed: Optional[Callable[[Utterance, TranslationError], None]] = None,
        metrics_reporter: Optional[SessionMetricsReporter] = None,
    ) -> None:
        self._service = service
        self._languages = (normalize_language_code(languages[0]), normalize_language_code(languages[1]))
        self.on_translated = on_translated
        self.on_failed = on_failed
        self._metrics_reporter = metrics_reporter
        self._tasks: set[asyncio.Task[None]] = set()

    def target_for(self, language: str) -> str:
        first, second = self._languages
        return second if normalize_language_code(language) == first else first

    def submit(self, utterance: Utterance) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(self.translate(utterance), name="utterance-translation")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def translate(self, utterance: Utterance) -> Optional[str]:
        target = self.target_for(utterance.language)
        try:
            translated = await self._service.translate(utterance.text, utterance.language, target)
        except TranslationError as exc:
            logging.warning("translation_failed source=%s target=%s error=%s", utterance.language, target, exc)
            if self._metrics_reporter is not None:
                self._metrics_reporter.record_error("translation", str(exc))
            if self.on_failed is not None:
                self.on_failed(utterance, exc)
            return None
        if self.on_translated is not None:
            self.on_translated(utterance, translated)
        return translated

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
