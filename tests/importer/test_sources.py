from __future__ import annotations

import logging
from datetime import date

import pytest
import requests

from hts_app.importer.errors import ImportPipelineError
from hts_app.importer.sources import UsitcSource, build_source_version, get_source, parse_source_version

TEMPLATE = "https://example.test/hts_{year}_revision_{revision}_json.json"


class HeadSession:
    """Answers HEAD requests with 200 for the URLs in ``available``."""

    def __init__(self, available=(), *, failing=()):
        self.available = set(available)
        self.failing = set(failing)
        self.calls: list[str] = []

    def head(self, url, **kwargs):
        self.calls.append(url)
        if url in self.failing:
            raise requests.ConnectionError("connection reset")

        class _Response:
            status_code = 200 if url in self.available else 404

        return _Response()


def _source(*available, failing=(), max_revision=5):
    session = HeadSession(available, failing=failing)
    source = UsitcSource(
        url_template=TEMPLATE,
        max_revision=max_revision,
        session=session,
        logger=logging.getLogger("tests.sources"),
    )
    return source, session


def _url(year, revision):
    return TEMPLATE.format(year=year, revision=revision)


def test_version_round_trip():
    assert build_source_version(2025, 3) == "2025_revision_3"
    assert parse_source_version(" 2025_revision_3 ") == (2025, 3)
    with pytest.raises(ValueError):
        parse_source_version("2025-rev-3")


def test_find_latest_revision_prefers_highest_current_year():
    source, session = _source(_url(2025, 2), _url(2025, 3), _url(2024, 5))

    release = source.find_latest_revision(today=date(2025, 6, 1))

    assert release.version == "2025_revision_3"
    assert release.json_url == _url(2025, 3)
    assert "2025HTSRev3" in release.pdf_url
    assert session.calls[:3] == [_url(2025, 5), _url(2025, 4), _url(2025, 3)]


def test_find_latest_revision_falls_back_to_previous_year():
    source, _ = _source(_url(2024, 4), failing={_url(2025, 5)})

    release = source.find_latest_revision(today=date(2025, 1, 15))

    assert release.version == "2024_revision_4"


def test_find_latest_revision_returns_none_when_nothing_published():
    source, session = _source()

    assert source.find_latest_revision(today=date(2025, 1, 15)) is None
    assert len(session.calls) == 10


def test_check_for_updates_next_revision_then_next_year():
    source, _ = _source(_url(2025, 4))
    assert source.check_for_updates("2025_revision_3") == {
        "hasUpdate": True,
        "currentVersion": "2025_revision_3",
        "latestVersion": "2025_revision_4",
        "url": _url(2025, 4),
    }

    source, _ = _source(_url(2026, 1))
    assert source.check_for_updates("2025_revision_3")["latestVersion"] == "2026_revision_1"

    source, _ = _source()
    assert source.check_for_updates("2025_revision_3") == {"hasUpdate": False, "currentVersion": "2025_revision_3"}


def test_resolve_explicit_and_latest():
    source, _ = _source()
    assert source.resolve("2025_revision_2") == ("2025_revision_2", _url(2025, 2))

    with pytest.raises(ValueError):
        source.resolve("next-week")
    with pytest.raises(ImportPipelineError):
        source.resolve("latest")


def test_get_source_reads_app_config(importer_app, monkeypatch):
    monkeypatch.setitem(importer_app.config, "HTS_SOURCE_URL_TEMPLATE", TEMPLATE)
    monkeypatch.setitem(importer_app.config, "HTS_SOURCE_MAX_REVISION", 7)

    source = get_source(importer_app)

    assert source.max_revision == 7
    assert source.build_url(2025, 1) == _url(2025, 1)
