"""Lightweight NLP utilities: language detection and handoff-intent matching."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Tuple

from langdetect import DetectorFactory, LangDetectException, detect

from .config import DEFAULT_HANDOFF_KEYWORDS

DetectorFactory.seed = 0

# Latin-1 supplement through Latin Extended Additional covers Vietnamese
# diacritics (and most accented Latin scripts).
_DIACRITICS = re.compile(r"[\u00C0-\u1EF9]")
_VIETNAMESE_STOPWORDS = re.compile(r"tiếng|việt|sao|gì|nào|làm|thế", re.I)

SUPPORTED_LANGUAGES = ("en", "vi")


def detect_language(text: str, default: str = "en") -> str:
    """Return ``"vi"`` or ``"en"`` for canned replies.

    Vietnamese is recognised by diacritics or common function words before
    falling back to ``langdetect``; anything else maps to ``default``.
    """

    text = text or ""
    if _DIACRITICS.search(text) or _VIETNAMESE_STOPWORDS.search(text):
        return "vi"
    language = _language(text)
    if language in SUPPORTED_LANGUAGES:
        return language
    return default


def _language(text: str) -> Optional[str]:
    try:
        return detect(text) if text.strip() else None
    except LangDetectException:
        return None


@dataclass
class HandoffIntentMatcher:
    """Case-insensitive substring match against a keyword list."""

    keywords: Tuple[str, ...] = field(default=DEFAULT_HANDOFF_KEYWORDS)

    def __post_init__(self) -> None:
        self._lowered = tuple(k.lower() for k in self.keywords if k and k.strip())

    @classmethod
    def from_keywords(cls, keywords: Iterable[str]) -> "HandoffIntentMatcher":
        return cls(tuple(keywords))

    def match(self, text: str) -> Optional[str]:
        """Return the first matching keyword, or ``None``."""

        lowered = (text or "").lower()
        for keyword in self._lowered:
            if keyword in lowered:
                return keyword
        return None

    def matches(self, text: str) -> bool:
        return self.match(text) is not None


__all__ = ["HandoffIntentMatcher", "SUPPORTED_LANGUAGES", "detect_language"]
