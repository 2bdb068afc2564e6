from __future__ import annotations

from hts_app.importer.pipeline.checkpoint import Checkpoint, load_checkpoint, reset_checkpoint
from hts_app.models.importer.schema import ImportJob, PipelineStage


def test_round_trips_camel_case_keys():
    checkpoint = Checkpoint(
        stage=PipelineStage.STAGING,
        blob_key="hts/raw/2025_revision_2.json",
        blob_store_id="local",
        file_hash="abc",
        downloaded_bytes=42,
        processed_batches=2,
        total_batches=5,
        processed_records=2000,
        last_processed_partition_key="03",
    )
    data = checkpoint.to_dict()
    assert data["blobKey"] == "hts/raw/2025_revision_2.json"
    assert data["lastProcessedPartitionKey"] == "03"
    assert Checkpoint.from_dict(data) == checkpoint


def test_unknown_stage_falls_back_to_downloading():
    assert Checkpoint.from_dict({"stage": "bogus"}).stage == PipelineStage.DOWNLOADING
    assert Checkpoint.from_dict(None) == Checkpoint()


def test_with_batch_never_moves_partition_key_backwards():
    checkpoint = Checkpoint(stage=PipelineStage.STAGING).with_batch(records=10, partition_key="05")
    checkpoint = checkpoint.with_batch(records=5, partition_key="03")
    assert checkpoint.last_processed_partition_key == "05"
    assert checkpoint.processed_records == 15
    assert checkpoint.processed_batches == 2


def test_with_record_counts_entries_without_closing_a_batch():
    checkpoint = Checkpoint(stage=PipelineStage.PROCESSING).with_batch(records=2, partition_key="0101.29.00")
    checkpoint = checkpoint.with_record(partition_key="0101.30.00")
    checkpoint = checkpoint.with_record(partition_key="0101.21.00")
    assert checkpoint.processed_records == 4
    assert checkpoint.processed_batches == 1
    assert checkpoint.last_processed_partition_key == "0101.30.00"


def test_advance_clears_progress_but_keeps_blob():
    checkpoint = Checkpoint(stage=PipelineStage.STAGING, blob_key="k").with_batch(records=3, partition_key="01")
    advanced = checkpoint.advance(PipelineStage.VALIDATING)
    assert advanced.stage == PipelineStage.VALIDATING
    assert advanced.processed_records == 0
    assert advanced.last_processed_partition_key is None
    assert advanced.blob_key == "k"


def test_reset_checkpoint_keeps_blob_only_after_download():
    job = ImportJob(source_version="2025_revision_2", source_url="https://example.test")
    job.checkpoint = Checkpoint(stage=PipelineStage.DIFFING, blob_key="k").to_dict()

    reset_checkpoint(job, stage=PipelineStage.STAGING)
    assert load_checkpoint(job).blob_key == "k"
    assert load_checkpoint(job).stage == PipelineStage.STAGING

    reset_checkpoint(job, stage=PipelineStage.DOWNLOADING)
    assert load_checkpoint(job) == Checkpoint()


def test_stage_ordering_helpers():
    assert PipelineStage.DIFFING.at_or_after(PipelineStage.STAGING)
    assert not PipelineStage.DOWNLOADING.at_or_after(PipelineStage.DOWNLOADED)
    assert PipelineStage.PROCESSING.next_stage() == PipelineStage.COMPLETED
    assert PipelineStage.COMPLETED.next_stage() == PipelineStage.COMPLETED
