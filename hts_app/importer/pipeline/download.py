"""
Download stage: stream the published schedule into the blob store.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Callable, Iterator, TypeVar

import requests

from hts_app.models.importer.schema import PipelineStage

from ..errors import DownloadError, DownloadTimeout, MalformedPayloadError, PayloadTooLargeError, is_retryable
from ..metrics import record_download
from ..storage import BlobStore, UploadResult, build_blob_key
from .context import StageContext
from .job_log import JobLogSink

CHUNK_SIZE = 256 * 1024
CONNECT_TIMEOUT_SECONDS = 30
JSON_LEADING_BYTES = (b"[", b"{")

T = TypeVar("T")


@dataclass(frozen=True)
class DownloadSummary:
    blob_key: str
    file_hash: str
    size_bytes: int
    skipped: bool
    attempts: int


def stream_source(
    url: str,
    *,
    session: requests.Session,
    timeout_seconds: float,
    max_bytes: int,
    clock: Callable[[], float] = time.monotonic,
    chunk_size: int = CHUNK_SIZE,
) -> Iterator[bytes]:
    """
    Yield the response body of ``url`` in chunks.

    Raises ``PayloadTooLargeError`` when the declared or observed size exceeds
    ``max_bytes`` and ``DownloadTimeout`` when the transfer runs longer than
    ``timeout_seconds`` of wall-clock time.
    """
    deadline = clock() + timeout_seconds
    try:
        response = session.get(
            url,
            stream=True,
            timeout=(min(CONNECT_TIMEOUT_SECONDS, timeout_seconds), timeout_seconds),
        )
    except requests.Timeout as exc:
        raise DownloadTimeout(f"Timed out connecting to {url}: {exc}") from exc
    except requests.RequestException as exc:
        raise DownloadError(f"Request to {url} failed: {exc}") from exc

    with response:
        if response.status_code != 200:
            raise DownloadError(
                f"HTTP {response.status_code} fetching {url}: {response.reason}",
                status_code=response.status_code,
            )
        declared = response.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > max_bytes:
            raise PayloadTooLargeError(int(declared), max_bytes)

        received = 0
        sniffed = False
        try:
            for chunk in response.iter_content(chunk_size=chunk_size):
                if not chunk:
                    continue
                if clock() > deadline:
                    raise DownloadTimeout(f"Download of {url} exceeded {timeout_seconds}s.")
                if not sniffed:
                    stripped = chunk.lstrip()
                    if stripped:
                        if not stripped.startswith(JSON_LEADING_BYTES):
                            raise MalformedPayloadError(f"Response from {url} is not a JSON document.")
                        sniffed = True
                received += len(chunk)
                if received > max_bytes:
                    raise PayloadTooLargeError(received, max_bytes)
                yield chunk
        except requests.RequestException as exc:
            raise DownloadError(f"Transfer from {url} interrupted: {exc}") from exc


def download_with_retry(
    fetch: Callable[[], T],
    *,
    attempts: int,
    base_delay_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
    log: JobLogSink | None = None,
) -> tuple[T, int]:
    """
    Call ``fetch`` up to ``attempts`` times, sleeping ``base * 2**(n-1)`` between
    tries. Non-retryable errors surface immediately.
    """
    attempts = max(attempts, 1)
    attempt = 1
    while True:
        if log is not None:
            log.log(f"Download attempt {attempt}/{attempts}")
        try:
            return fetch(), attempt
        except DownloadError as exc:
            record_download(outcome="failure")
            if not is_retryable(exc) or attempt >= attempts:
                raise
            delay = base_delay_seconds * (2 ** (attempt - 1))
            if log is not None:
                log.log(f"Download attempt {attempt} failed ({exc}); retrying in {delay:g}s")
            sleep(delay)
            attempt += 1


def _upload(ctx: StageContext, blob_store: BlobStore, key: str, max_bytes: int) -> UploadResult:
    job = ctx.job
    return blob_store.upload_stream(
        key,
        stream_source(
            job.source_url,
            session=ctx.session,
            timeout_seconds=ctx.setting("IMPORTER_DOWNLOAD_TIMEOUT_SECONDS", 300),
            max_bytes=max_bytes,
        ),
        metadata={"sourceVersion": job.source_version, "sourceUrl": job.source_url},
        max_bytes=max_bytes,
    )


def run_download_stage(ctx: StageContext) -> DownloadSummary:
    """
    Fetch the source into ``<namespace>/raw/<source_version>.json``.

    An object already present under the key is adopted as-is so a retried job
    never downloads twice.
    """
    job = ctx.job
    store = ctx.blob_store
    key = build_blob_key(ctx.config.get("IMPORTER_BLOB_NAMESPACE", "hts"), job.source_version)
    max_bytes = ctx.setting("IMPORTER_DOWNLOAD_MAX_MB", 100) * 1024 * 1024

    if store.exists(key):
        metadata = store.get_metadata(key)
        summary = DownloadSummary(
            blob_key=key, file_hash=metadata.etag, size_bytes=metadata.size, skipped=True, attempts=0
        )
        record_download(outcome="skipped")
        ctx.log.log(f"Blob {key} already present ({metadata.size} bytes); skipping download")
    else:
        ctx.log.log(f"Downloading {job.source_url}")
        result, attempts = download_with_retry(
            lambda: _upload(ctx, store, key, max_bytes),
            attempts=ctx.setting("IMPORTER_DOWNLOAD_RETRY_ATTEMPTS", 3),
            base_delay_seconds=ctx.setting("IMPORTER_DOWNLOAD_RETRY_BASE_SECONDS", 2),
            sleep=ctx.sleep,
            log=ctx.log,
        )
        summary = DownloadSummary(
            blob_key=key, file_hash=result.sha256, size_bytes=result.size, skipped=False, attempts=attempts
        )
        record_download(outcome="success", size_bytes=result.size)
        ctx.log.log(f"Downloaded {result.size} bytes to {key} (sha256 {result.sha256[:12]})")

    checkpoint = replace(
        ctx.checkpoint,
        blob_key=summary.blob_key,
        blob_store_id=store.store_id,
        file_hash=summary.file_hash,
        downloaded_bytes=summary.size_bytes,
    )
    ctx.update_counts(
        "download",
        {"bytes": summary.size_bytes, "skipped": summary.skipped, "attempts": summary.attempts},
    )
    ctx.advance(PipelineStage.DOWNLOADED, checkpoint=checkpoint)
    return summary
