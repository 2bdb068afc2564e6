from __future__ import annotations

import json

import pytest
import requests

from hts_app.importer.errors import DownloadError, DownloadTimeout, MalformedPayloadError, PayloadTooLargeError
from hts_app.importer.pipeline.context import StageContext
from hts_app.importer.pipeline.download import download_with_retry, run_download_stage, stream_source
from hts_app.importer.storage import build_blob_key
from hts_app.models.importer.schema import PipelineStage

from .support import FakeResponse, FakeSession, RecordingLog, schedule_row

DOCUMENT = json.dumps([schedule_row("0101")]).encode("utf-8")


def test_stream_source_yields_body():
    session = FakeSession(FakeResponse(DOCUMENT))
    body = b"".join(stream_source("https://example.test/x", session=session, timeout_seconds=5, max_bytes=10_000))
    assert body == DOCUMENT
    assert session.calls == ["https://example.test/x"]


def test_stream_source_rejects_http_errors():
    session = FakeSession(FakeResponse(status_code=404))
    with pytest.raises(DownloadError) as excinfo:
        list(stream_source("https://example.test/x", session=session, timeout_seconds=5, max_bytes=100))
    assert excinfo.value.status_code == 404


def test_stream_source_enforces_declared_and_observed_size():
    declared = FakeSession(FakeResponse(DOCUMENT, headers={"Content-Length": "999999"}))
    with pytest.raises(PayloadTooLargeError):
        list(stream_source("u", session=declared, timeout_seconds=5, max_bytes=100))

    observed = FakeSession(FakeResponse(b"[" + b"1," * 200 + b"1]"))
    with pytest.raises(PayloadTooLargeError):
        list(stream_source("u", session=observed, timeout_seconds=5, max_bytes=100))


def test_stream_source_rejects_non_json_payloads():
    session = FakeSession(FakeResponse(b"<html>maintenance</html>"))
    with pytest.raises(MalformedPayloadError):
        list(stream_source("u", session=session, timeout_seconds=5, max_bytes=10_000))


def test_stream_source_enforces_wall_clock_timeout():
    ticks = iter([0.0, 1.0, 100.0])
    session = FakeSession(FakeResponse(DOCUMENT))
    with pytest.raises(DownloadTimeout):
        list(
            stream_source(
                "u",
                session=session,
                timeout_seconds=10,
                max_bytes=10_000,
                clock=lambda: next(ticks),
            )
        )


def test_stream_source_wraps_transport_errors():
    session = FakeSession(requests.ConnectionError("reset"))
    with pytest.raises(DownloadError):
        list(stream_source("u", session=session, timeout_seconds=5, max_bytes=100))

    broken = FakeSession(FakeResponse(chunks=[b"[1,", requests.exceptions.ChunkedEncodingError("eof")]))
    with pytest.raises(DownloadError):
        list(stream_source("u", session=broken, timeout_seconds=5, max_bytes=100))


def test_download_with_retry_backs_off_exponentially():
    attempts = []
    sleeps = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise DownloadError("boom")
        return "ok"

    result, used = download_with_retry(flaky, attempts=3, base_delay_seconds=2, sleep=sleeps.append)
    assert result == "ok"
    assert used == 3
    assert sleeps == [2, 4]


def test_download_with_retry_gives_up_after_attempts():
    sleeps = []

    def always_fails():
        raise DownloadError("down")

    with pytest.raises(DownloadError):
        download_with_retry(always_fails, attempts=2, base_delay_seconds=1, sleep=sleeps.append)
    assert sleeps == [1]


def test_download_with_retry_does_not_retry_oversized_payloads():
    calls = []

    def too_big():
        calls.append(1)
        raise PayloadTooLargeError(10, 5)

    with pytest.raises(PayloadTooLargeError):
        download_with_retry(too_big, attempts=5, base_delay_seconds=0, sleep=lambda _: None)
    assert len(calls) == 1


def test_run_download_stage_stores_blob_and_advances(job_factory, blob_store):
    job = job_factory()
    session = FakeSession(FakeResponse(status_code=503), FakeResponse(DOCUMENT))
    log = RecordingLog()
    ctx = StageContext.for_job(job, blob_store=blob_store, session=session, sleep=lambda _: None, log=log)

    summary = run_download_stage(ctx)

    assert not summary.skipped
    assert summary.attempts == 2
    assert summary.size_bytes == len(DOCUMENT)
    checkpoint = ctx.checkpoint
    assert checkpoint.stage == PipelineStage.DOWNLOADED
    assert checkpoint.blob_key == build_blob_key("hts", job.source_version)
    assert checkpoint.file_hash == summary.file_hash
    assert checkpoint.downloaded_bytes == len(DOCUMENT)
    assert checkpoint.blob_store_id == "test-store"
    assert job.counts_json["download"] == {"bytes": len(DOCUMENT), "skipped": False, "attempts": 2}
    assert any("retrying" in message for message in log.messages)


def test_run_download_stage_skips_existing_blob(job_factory, blob_store, seed_blob):
    seed_blob([schedule_row("0101")])
    job = job_factory()
    session = FakeSession()
    ctx = StageContext.for_job(job, blob_store=blob_store, session=session, log=RecordingLog())

    summary = run_download_stage(ctx)

    assert summary.skipped
    assert session.calls == []
    assert ctx.checkpoint.stage == PipelineStage.DOWNLOADED
    assert ctx.checkpoint.file_hash == blob_store.get_metadata(summary.blob_key).etag


def test_run_download_stage_respects_size_cap(importer_app, job_factory, blob_store, monkeypatch):
    monkeypatch.setitem(importer_app.config, "IMPORTER_DOWNLOAD_MAX_MB", 1)
    job = job_factory()
    oversized = FakeResponse(chunks=[b"[" + b"0" * (1024 * 1024) + b"]"])
    ctx = StageContext.for_job(job, blob_store=blob_store, session=FakeSession(oversized), log=RecordingLog())

    with pytest.raises(PayloadTooLargeError):
        run_download_stage(ctx)
    assert not blob_store.exists(build_blob_key("hts", job.source_version))
    assert ctx.checkpoint.stage == PipelineStage.DOWNLOADING
