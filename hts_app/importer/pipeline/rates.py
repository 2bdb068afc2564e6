"""
Duty-rate text classifier.

Rate columns are free text ("5%", "2.4¢/kg + 5%", "Free (A,AU,BH)", ...). The
classifier does not evaluate rates; it only reports which known shapes a text
matches so validation can flag values nobody recognises.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_NUMBER = r"\d+(?:\.\d+)?"

RATE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("ad_valorem", re.compile(rf"^{_NUMBER}\s*%(?:\s+ad\s+val(?:orem|\.))?$", re.IGNORECASE)),
    ("specific_currency", re.compile(rf"^\${_NUMBER}(?:\s*/\s*[a-z][\w .]*|\s+(?:per|each)\b.*)?$", re.IGNORECASE)),
    ("specific_unit", re.compile(rf"^{_NUMBER}\s*(?:/|per\s+)\s*[a-z][\w .]*$", re.IGNORECASE)),
    ("cents_specific", re.compile(rf"^{_NUMBER}\s*¢\s*(?:/|per\s+|each\b)", re.IGNORECASE)),
    ("compound", re.compile(rf"{_NUMBER}\s*(?:¢|%|\S*/\s*\S+)[^+]*\+\s*\$?{_NUMBER}\s*(?:%|¢)", re.IGNORECASE)),
    ("range", re.compile(rf"^{_NUMBER}\s*%?\s*(?:-|to)\s*{_NUMBER}\s*%$", re.IGNORECASE)),
    ("parenthetical", re.compile(r"\([^)]*\)")),
    ("preferential_free", re.compile(r"^free\s*\([^)]+\)", re.IGNORECASE)),
    ("preferential_rate", re.compile(rf"^(?:\$?{_NUMBER}\s*(?:%|¢)?[^(]*)\s*\([^)]+\)", re.IGNORECASE)),
    ("rate_or_specific", re.compile(r"\S\s+or\s+\S", re.IGNORECASE)),
    ("footnote", re.compile(r"\b(?:see|provided\s+for\s+in)\s+(?:heading|subheading|note|chapter|\d{4})", re.IGNORECASE)),
    ("numeric", re.compile(rf"^{_NUMBER}$")),
)

RATE_KEYWORDS = frozenset({"free", "exempt"})
REFERENCE_PREFIX = "see "

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class RateClassification:
    text: str
    matches: tuple[str, ...]
    is_keyword: bool

    @property
    def is_empty(self) -> bool:
        return not self.text

    @property
    def likely_rate(self) -> bool:
        return self.is_empty or self.is_keyword or bool(self.matches)

    @property
    def ambiguous(self) -> bool:
        return len(self.matches) > 1


def normalize_rate_text(value: object | None) -> str:
    if value is None:
        return ""
    return _WHITESPACE_RE.sub(" ", str(value)).strip()


def classify_rate(value: object | None) -> RateClassification:
    text = normalize_rate_text(value)
    lowered = text.lower()
    matches = tuple(name for name, pattern in RATE_PATTERNS if pattern.search(text))
    is_keyword = lowered in RATE_KEYWORDS or lowered.startswith(REFERENCE_PREFIX)
    return RateClassification(text=text, matches=matches, is_keyword=is_keyword)
