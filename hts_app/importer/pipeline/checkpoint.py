"""
Per-job resume state persisted in ``ImportJob.checkpoint``.

The JSON keys are part of the operator-facing contract and stay camelCase.
``processedRecords`` and ``lastProcessedPartitionKey`` only move forward
within a stage and are reset whenever the stage advances.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Mapping

from hts_app.models.importer.schema import ImportJob, PipelineStage


@dataclass(frozen=True)
class Checkpoint:
    stage: PipelineStage = PipelineStage.DOWNLOADING
    blob_key: str | None = None
    blob_store_id: str | None = None
    file_hash: str | None = None
    downloaded_bytes: int | None = None
    processed_batches: int = 0
    total_batches: int | None = None
    processed_records: int = 0
    last_processed_partition_key: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "Checkpoint":
        if not data:
            return cls()
        try:
            stage = PipelineStage(data.get("stage") or PipelineStage.DOWNLOADING.value)
        except ValueError:
            stage = PipelineStage.DOWNLOADING
        return cls(
            stage=stage,
            blob_key=data.get("blobKey"),
            blob_store_id=data.get("blobStoreId"),
            file_hash=data.get("fileHash"),
            downloaded_bytes=data.get("downloadedBytes"),
            processed_batches=int(data.get("processedBatches") or 0),
            total_batches=data.get("totalBatches"),
            processed_records=int(data.get("processedRecords") or 0),
            last_processed_partition_key=data.get("lastProcessedPartitionKey"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "blobKey": self.blob_key,
            "blobStoreId": self.blob_store_id,
            "fileHash": self.file_hash,
            "downloadedBytes": self.downloaded_bytes,
            "processedBatches": self.processed_batches,
            "totalBatches": self.total_batches,
            "processedRecords": self.processed_records,
            "lastProcessedPartitionKey": self.last_processed_partition_key,
        }

    def with_record(self, *, partition_key: str) -> "Checkpoint":
        """Record one entry committed on its own, outside any batch."""
        last_key = self.last_processed_partition_key
        if last_key is None or partition_key >= last_key:
            last_key = partition_key
        return replace(self, processed_records=self.processed_records + 1, last_processed_partition_key=last_key)

    def advance(self, stage: PipelineStage) -> "Checkpoint":
        """Move to ``stage`` with progress counters cleared; blob details persist."""
        return replace(
            self,
            stage=stage,
            processed_batches=0,
            total_batches=None,
            processed_records=0,
            last_processed_partition_key=None,
        )

    def with_batch(self, *, records: int, partition_key: str | None, total_batches: int | None = None) -> "Checkpoint":
        """Record one committed batch. Keys never move backwards."""
        last_key = self.last_processed_partition_key
        if partition_key is not None and (last_key is None or partition_key >= last_key):
            last_key = partition_key
        return replace(
            self,
            processed_batches=self.processed_batches + 1,
            total_batches=total_batches if total_batches is not None else self.total_batches,
            processed_records=self.processed_records + max(records, 0),
            last_processed_partition_key=last_key,
        )


def load_checkpoint(job: ImportJob) -> Checkpoint:
    return Checkpoint.from_dict(job.checkpoint)


def save_checkpoint(job: ImportJob, checkpoint: Checkpoint) -> Checkpoint:
    """Assign the checkpoint to the job; the caller owns the commit."""
    job.checkpoint = checkpoint.to_dict()
    return checkpoint


def reset_checkpoint(job: ImportJob, *, stage: PipelineStage = PipelineStage.DOWNLOADING) -> Checkpoint:
    """
    Rewind a job to ``stage``. Blob details are kept when rewinding to a stage
    after the download so a restage does not refetch the source.
    """
    current = load_checkpoint(job)
    if stage.at_or_after(PipelineStage.DOWNLOADED) and current.blob_key:
        checkpoint = current.advance(stage)
    else:
        checkpoint = Checkpoint(stage=stage)
    return save_checkpoint(job, checkpoint)
