from __future__ import annotations

import logging
import re
from typing import Final, Optional, Sequence

_LOCALE_TAGS: Final[dict[str, str]] = {
    "vi": "vi-VN",
    "ja": "ja-JP",
    "en": "en-US",
    "ko": "ko-KR",
    "zh": "zh-CN",
}

_LANGUAGE_ALIASES: Final[dict[str, str]] = {
    "jpn": "ja",
    "japanese": "ja",
    "vie": "vi",
    "vietnamese": "vi",
    "eng": "en",
    "english": "en",
    "kor": "ko",
    "korean": "ko",
    "zho": "zh",
    "chi": "zh",
    "chinese": "zh",
}


def normalize_language_code(code: Optional[str]) -> str:
    raw = (code or "").strip().lower()
    if not raw:
        return "unknown"
    base = raw.replace("_", "-").split("-", 1)[0]
    return _LANGUAGE_ALIASES.get(raw, _LANGUAGE_ALIASES.get(base, base))


def to_locale_tag(code: str) -> str:
    return _LOCALE_TAGS.get(normalize_language_code(code), code)


class LanguageDetector:
    """Classify text by the script of its characters.

    Kana means Japanese. Ideographs without kana are shared by Japanese and
    Chinese, so the session's languages decide: Chinese only when the session
    has ``zh`` and not ``ja``. Vietnamese is recognised by its tone-marked
    letters. Plain ASCII is not distinguishing between two Latin-script
    parties, so it maps to ``ascii_language`` (``None`` unless configured).
    """

    _KANA: Final[re.Pattern[str]] = re.compile(r"[\u3040-\u309F\u30A0-\u30FF]")
    _HAN: Final[re.Pattern[str]] = re.compile(r"[\u4E00-\u9FFF\u3400-\u4DBF]")
    _ORDERED_PATTERNS: Final[tuple[tuple[str, re.Pattern[str]], ...]] = (
        (
            "vi",
            re.compile(
                r"[àáảãạăắằẳẵặâấầẩẫậèéẻẽẹêếềểễệìíỉĩịòóỏõọôốồổỗộơớờởỡợùúủũụưứừửữựỳýỷỹỵđ"
                r"ÀÁẢÃẠĂẮẰẲẴẶÂẤẦẨẪẬÈÉẺẼẸÊẾỀỂỄỆÌÍỈĨỊÒÓỎÕỌÔỐỒỔỖỘƠỚỜỞỠỢÙÚỦŨỤƯỨỪỬỮỰỲÝỶỸỴĐ]"
            ),
        ),
        ("ko", re.compile(r"[\uAC00-\uD7A3\u1100-\u11FF\u3130-\u318F]")),
    )
    _ASCII_WORDS: Final[re.Pattern[str]] = re.compile(r"^[a-zA-Z0-9\s.,!?'-]+$")
    _HAS_LETTER: Final[re.Pattern[str]] = re.compile(r"[a-zA-Z]")

    def __init__(self, ascii_language: Optional[str] = None) -> None:
        self._ascii_language = ascii_language

    def detect(self, text: str, languages: Sequence[str] = ()) -> Optional[str]:
        if not text or not text.strip():
            return None
        if self._KANA.search(text):
            return "ja"
        if self._HAN.search(text):
            return "zh" if "zh" in languages and "ja" not in languages else "ja"
        for language, pattern in self._ORDERED_PATTERNS:
            if pattern.search(text):
                return language
        if self._ascii_language and self._ASCII_WORDS.match(text) and self._HAS_LETTER.search(text):
            return self._ascii_language
        return None

    def classify(self, text: str, fallback: str, languages: Sequence[str] = ()) -> str:
        return self.detect(text, languages) or fallback

    def verify_language(
        self,
        text: str,
        reported: Optional[str],
        fallback: str,
        languages: Sequence[str] = (),
    ) -> str:
        """Correct a recognizer-reported language when the script disagrees.

        With no usable script the reported language stands, then ``fallback``.
        """
        if not text or not text.strip():
            return fallback
        normalized = normalize_language_code(reported)
        detected = self.detect(text, languages)
        if detected is None:
            return fallback if normalized == "unknown" else normalized
        if normalized != "unknown" and detected != normalized:
            logging.debug("language_corrected reported=%s detected=%s", reported, detected)
        return detected
