"""
Importer-specific helpers shared by the pipeline stages and services.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Mapping, Sequence
from datetime import date, datetime
from pathlib import Path
from typing import Any

DEFAULT_BLOB_SUBDIR = "import_blobs"

_WHITESPACE_RE = re.compile(r"\s+")
_NON_DIGIT_RE = re.compile(r"\D")


def _normalize_directory(configured_path: str | None, instance_path: str, *, default_subdir: str) -> Path:
    if not configured_path:
        return Path(instance_path) / default_subdir
    candidate = Path(configured_path)
    if candidate.is_absolute():
        return candidate
    return Path(instance_path) / candidate


def resolve_blob_directory(app) -> Path:
    """
    Determine and create (if necessary) the root directory of the local blob store.
    """
    blob_dir = _normalize_directory(
        app.config.get("IMPORTER_BLOB_DIR"),
        app.instance_path,
        default_subdir=DEFAULT_BLOB_SUBDIR,
    )
    blob_dir.mkdir(parents=True, exist_ok=True)
    return blob_dir


def compute_checksum(payload: Mapping[str, object | None]) -> str:
    """Return a stable SHA-256 over the canonical JSON form of ``payload``."""
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def collapse_whitespace(value: object | None) -> str | None:
    """Trim and collapse internal whitespace; blank strings become ``None``."""
    if value is None:
        return None
    text = _WHITESPACE_RE.sub(" ", str(value)).strip()
    return text or None


def digits_only(value: object | None) -> str:
    if value is None:
        return ""
    return _NON_DIGIT_RE.sub("", str(value))


def ensure_json_serializable(value: Any) -> Any:
    """
    Best-effort conversion of values to JSON-serializable representations.
    """
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Mapping):
        return {str(key): ensure_json_serializable(inner) for key, inner in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [ensure_json_serializable(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return str(value)


def isoformat(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None
