"""
Source record iteration and normalization.

USITC publishes either a flat list of tariff lines or a mapping of chapter to
list (optionally wrapped in ``{"chapters": {...}}``). Both shapes are exposed
as an iterator of ``(partition_key, record)`` ordered by chapter, and each
record is projected onto the canonical staged shape.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Mapping

from ..errors import MalformedPayloadError
from ..utils import collapse_whitespace, compute_checksum, digits_only

CODE_ALIASES = ("htsno", "hts_number", "htsNumber", "hts", "hts_code", "code")
DESCRIPTION_ALIASES = ("description", "desc")
UNIT_ALIASES = ("units", "unit", "unitOfQuantity")
GENERAL_RATE_ALIASES = ("general", "general_rate", "generalRate")
SPECIAL_RATE_ALIASES = ("special", "special_rate", "specialRate")
OTHER_RATE_ALIASES = ("other", "other_rate", "otherRate", "2", "col2")
QUOTA_ALIASES = ("quota", "quotaQuantity")
QUOTA2_ALIASES = ("quota2",)

BUSINESS_FIELDS = (
    "indent",
    "description",
    "unit",
    "general_rate",
    "special_rate",
    "other_rate",
    "chapter99",
    "footnotes",
    "quota",
    "quota2",
)
HIERARCHY_FIELDS = ("chapter", "heading", "subheading", "tariff_line", "statistical_suffix", "parent_hts_number")

ALL_PROGRAMS = "ALL"
UNPARTITIONED = "00"

_SPECIAL_RATE_RE = re.compile(r"^(.+?)\s*\(([^)]+)\)")
_CHAPTER99_RE = re.compile(r"\b(\d{4}\.\d{2}\.\d{2}(?:\.\d{2})?)\b")
_PREFIX_LENGTHS = {"chapter": 2, "heading": 4, "subheading": 6, "tariff_line": 8, "statistical_suffix": 10}


def _first_present(record: Mapping[str, Any], aliases: Iterable[str]) -> tuple[bool, Any]:
    for alias in aliases:
        if alias in record:
            return True, record[alias]
    return False, None


def extract_code(record: Mapping[str, Any]) -> str | None:
    """Return the tariff code from whichever alias the record uses."""
    for alias in CODE_ALIASES:
        value = collapse_whitespace(record.get(alias))
        if value:
            return value
    return None


def normalize_partition_key(key: object) -> str:
    text = str(key).strip()
    if text.isdigit():
        return text.zfill(2)
    return text or UNPARTITIONED


def iter_source_records(document: Any) -> Iterator[tuple[str, Any]]:
    """
    Yield ``(partition_key, record)`` pairs sorted by partition.

    Flat lists are partitioned by the first two digits of each code; rows
    without a code inherit the partition of the row before them so the source
    order inside a chapter is preserved.
    """
    if isinstance(document, list):
        partitioned: list[tuple[str, Any]] = []
        current = UNPARTITIONED
        for record in document:
            code = extract_code(record) if isinstance(record, Mapping) else None
            digits = digits_only(code)
            if len(digits) >= 2:
                current = digits[:2]
            partitioned.append((current, record))
        partitioned.sort(key=lambda pair: pair[0])
        yield from partitioned
        return

    if isinstance(document, Mapping):
        chapters = document.get("chapters")
        if not isinstance(chapters, Mapping):
            chapters = document
        groups = [(normalize_partition_key(key), items) for key, items in chapters.items() if isinstance(items, list)]
        if not groups:
            raise MalformedPayloadError("Source document contains no chapter lists.")
        groups.sort(key=lambda pair: pair[0])
        for partition_key, items in groups:
            for record in items:
                yield partition_key, record
        return

    raise MalformedPayloadError(f"Unsupported source document type: {type(document).__name__}.")


def count_source_records(document: Any) -> int:
    if isinstance(document, list):
        return len(document)
    if isinstance(document, Mapping):
        chapters = document.get("chapters")
        if not isinstance(chapters, Mapping):
            chapters = document
        return sum(len(items) for items in chapters.values() if isinstance(items, list))
    return 0


def parse_special_rates(text: str | None) -> dict[str, str] | None:
    """
    ``"Free (A+,AU,BH)"`` becomes ``{"A+": "Free", "AU": "Free", "BH": "Free"}``;
    text without a program list is kept under ``"ALL"``.
    """
    if not text:
        return None
    match = _SPECIAL_RATE_RE.match(text)
    if match:
        rate = match.group(1).strip()
        programs = [program.strip() for program in match.group(2).split(",") if program.strip()]
        if programs:
            return {program: rate for program in programs}
    return {ALL_PROGRAMS: text}


def normalize_footnotes(raw: Any) -> list[str] | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        text = collapse_whitespace(raw)
        return [text] if text else None
    if isinstance(raw, Mapping):
        raw = [raw]
    if isinstance(raw, list):
        values: list[str] = []
        for item in raw:
            if isinstance(item, str):
                text = collapse_whitespace(item)
            elif isinstance(item, Mapping):
                text = collapse_whitespace(item.get("value"))
            else:
                text = None
            if text:
                values.append(text)
        return values or None
    return [str(raw)]


def extract_chapter99(footnotes: list[str] | None) -> list[str] | None:
    if not footnotes:
        return None
    references: list[str] = []
    for note in footnotes:
        for match in _CHAPTER99_RE.findall(note):
            if match not in references:
                references.append(match)
    return references or None


def _coerce_indent(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(str(value).strip())
    except ValueError:
        return 0


def _coerce_text(value: Any) -> str | None:
    if isinstance(value, list):
        value = ", ".join(str(item) for item in value if item not in (None, ""))
    return collapse_whitespace(value)


@dataclass
class HierarchyTracker:
    """Indent stack used to derive each code's parent within a partition."""

    partition_key: str | None = None
    stack: dict[int, str] = field(default_factory=dict)

    def parent_for(self, partition_key: str, hts_number: str, indent: int) -> str | None:
        if partition_key != self.partition_key:
            self.partition_key = partition_key
            self.stack = {}
        for level in range(indent - 1, -1, -1):
            parent = self.stack.get(level)
            if parent:
                return parent
        digits = digits_only(hts_number)
        if len(digits) > 4:
            return digits[:4]
        return None

    def push(self, indent: int, hts_number: str) -> None:
        self.stack = {level: code for level, code in self.stack.items() if level < indent}
        self.stack[indent] = hts_number


@dataclass(frozen=True)
class NormalizedRecord:
    partition_key: str
    hts_number: str
    indent: int
    columns: dict[str, Any]
    normalized: dict[str, Any]
    row_hash: str


def normalize_record(
    record: Mapping[str, Any],
    *,
    partition_key: str,
    hierarchy: HierarchyTracker,
) -> NormalizedRecord | None:
    """
    Project a raw source record onto the staged shape.

    Returns ``None`` when the record carries no code. ``normalized`` only
    contains optional keys the source actually supplied so validation can
    distinguish an absent description from a blank one.
    """
    hts_number = extract_code(record)
    if hts_number is None:
        return None

    indent = _coerce_indent(record.get("indent"))
    digits = digits_only(hts_number)

    explicit_chapter = collapse_whitespace(record.get("chapter"))
    chapter = explicit_chapter or (partition_key if partition_key != UNPARTITIONED else None) or (digits[:2] or None)
    prefixes = {
        name: digits[:length] if len(digits) >= length else None
        for name, length in _PREFIX_LENGTHS.items()
        if name != "chapter"
    }
    parent = hierarchy.parent_for(partition_key, hts_number, indent)
    hierarchy.push(indent, hts_number)

    normalized: dict[str, Any] = {
        "hts_number": hts_number,
        "indent": indent,
        "chapter": chapter,
        **prefixes,
        "parent_hts_number": parent,
    }
    for name, aliases in (
        ("description", DESCRIPTION_ALIASES),
        ("unit", UNIT_ALIASES),
        ("general_rate", GENERAL_RATE_ALIASES),
        ("special_rate", SPECIAL_RATE_ALIASES),
        ("other_rate", OTHER_RATE_ALIASES),
        ("quota", QUOTA_ALIASES),
        ("quota2", QUOTA2_ALIASES),
    ):
        present, value = _first_present(record, aliases)
        if present:
            normalized[name] = _coerce_text(value)

    footnotes = normalize_footnotes(record.get("footnotes"))
    normalized["footnotes"] = footnotes
    normalized["chapter99"] = extract_chapter99(footnotes)
    normalized["special_rates"] = parse_special_rates(normalized.get("special_rate"))

    columns = {
        "hts_number": hts_number,
        "indent": indent,
        "description": normalized.get("description"),
        "unit": normalized.get("unit"),
        "general_rate": normalized.get("general_rate"),
        "special_rate": normalized.get("special_rate"),
        "other_rate": normalized.get("other_rate"),
        "chapter99": normalized["chapter99"],
        "chapter": chapter,
        "parent_hts_number": parent,
        **prefixes,
    }
    return NormalizedRecord(
        partition_key=partition_key,
        hts_number=hts_number,
        indent=indent,
        columns=columns,
        normalized=normalized,
        row_hash=compute_checksum(normalized),
    )


def business_fields_from_staged(entry) -> dict[str, Any]:
    """Business field values of a ``StagedEntry`` in live-table terms."""
    normalized = entry.normalized or {}
    return {
        "indent": entry.indent,
        "description": entry.description,
        "unit": entry.unit,
        "general_rate": entry.general_rate,
        "special_rate": entry.special_rate,
        "other_rate": entry.other_rate,
        "chapter99": entry.chapter99,
        "footnotes": normalized.get("footnotes"),
        "quota": normalized.get("quota"),
        "quota2": normalized.get("quota2"),
    }


def business_fields_from_live(row) -> dict[str, Any]:
    return {name: getattr(row, name) for name in BUSINESS_FIELDS}


def changed_fields(current: Mapping[str, Any], staged: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    """Field-by-field comparison over ``BUSINESS_FIELDS``."""
    changes: dict[str, dict[str, Any]] = {}
    for name in BUSINESS_FIELDS:
        before = current.get(name)
        after = staged.get(name)
        if before != after:
            changes[name] = {"current": before, "staged": after}
    return changes
