"""Shared fakes and document builders for importer tests."""

from __future__ import annotations

from typing import Any, Iterable

BASELINE_VERSION = "2025_revision_1"
NEXT_VERSION = "2025_revision_2"


class FakeResponse:
    """Minimal stand-in for a streamed ``requests.Response``."""

    def __init__(self, body: bytes = b"", *, status_code: int = 200, headers: dict | None = None, chunks=None):
        self.status_code = status_code
        self.reason = "OK" if status_code == 200 else "Error"
        self.headers = headers or {}
        self._chunks = chunks if chunks is not None else [body[i : i + 16] for i in range(0, len(body), 16)]

    def iter_content(self, chunk_size: int = 1024):
        for chunk in self._chunks:
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


class FakeSession:
    """Replays queued responses (or exceptions) for successive ``get`` calls."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[str] = []

    def get(self, url, **kwargs):
        self.calls.append(url)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class RecordingLog:
    def __init__(self) -> None:
        self.messages: list[str] = []

    def log(self, message: str) -> None:
        self.messages.append(message)


def schedule_row(
    hts_number: str | None,
    *,
    indent: int = 0,
    description: str | None = "Live animals",
    units: Iterable[str] | None = ("No.",),
    general: str = "Free",
    special: str = "",
    other: str = "Free",
    **extra: Any,
) -> dict[str, Any]:
    row: dict[str, Any] = {
        "htsno": hts_number or "",
        "indent": str(indent),
        "description": description,
        "units": list(units or []),
        "general": general,
        "special": special,
        "other": other,
        "footnotes": [],
    }
    row.update(extra)
    return row
