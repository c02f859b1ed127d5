from __future__ import annotations

import asyncio
from pathlib import Path

import orjson
import pytest

from transcript_digest.analysis.prompts import NO_MESSAGES_REPORT
from transcript_digest.config import ChunkingConfig, PipelineConfig
from transcript_digest.errors import (
    AggregationError,
    AnalysisError,
    ConfigurationError,
    PipelineTimeoutError,
    SinkWriteError,
    SourceFormatError,
    SourceReadError,
)
from transcript_digest.pipeline import DigestPipeline
from transcript_digest.schemas import RunStage, RunState
from transcript_digest.sink import manifest_path
from transcript_digest.storage import LocalStorage


def _config(**chunking) -> PipelineConfig:
    return PipelineConfig(chunking=ChunkingConfig(**chunking))


def test_end_to_end_writes_report_and_manifest(tmp_path: Path, transcript_file, fake_client) -> None:
    source = transcript_file(25)
    output = tmp_path / "out" / "digest.md"
    client = fake_client(max_delay=0.01)

    state = DigestPipeline(_config(max_records=10), client).run_sync(str(source), str(output))

    assert state.stage == RunStage.DONE
    assert state.succeeded
    assert state.total_records == 25
    assert state.chunk_count == 3
    assert state.chunking_strategy == "bounded_greedy"
    assert state.average_chunk_size == pytest.approx(8.33)
    assert [p.chunk_index for p in state.partial_results] == [0, 1, 2]
    assert client.synth_calls == [["analysis 1-10", "analysis 11-20", "analysis 21-25"]]

    assert output.read_text(encoding="utf-8") == state.final_report
    manifest = orjson.loads(Path(manifest_path(str(output))).read_bytes())
    assert manifest["run_id"] == state.run_id
    assert manifest["stage"] == "done"
    assert manifest["total_records"] == 25
    assert manifest["report_chars"] == len(state.final_report)
    assert "records" not in manifest


def test_fail_fast_failure_writes_nothing(tmp_path: Path, transcript_file, fake_client) -> None:
    source = transcript_file(25)
    output = tmp_path / "digest.md"
    # Chunk 1 starts at seqId 11
    client = fake_client(fail_on={11})

    state = DigestPipeline(_config(max_records=10), client).run_sync(str(source), str(output))

    assert state.stage == RunStage.FAILED
    assert state.failed_stage == RunStage.ANALYZING
    assert isinstance(state.error, AnalysisError)
    assert state.error.chunk_index == 1
    assert state.error_message.startswith("[analyzing]")
    assert state.final_report is None
    assert client.synth_calls == []
    assert not output.exists()
    assert not Path(manifest_path(str(output))).exists()


def test_best_effort_records_failed_chunks(tmp_path: Path, transcript_file, fake_client) -> None:
    source = transcript_file(25)
    output = tmp_path / "digest.md"
    config = _config(max_records=10)
    config.analysis.fail_fast = False
    client = fake_client(fail_on={11})

    state = DigestPipeline(config, client).run_sync(str(source), str(output))

    assert state.succeeded
    assert state.failed_indices == [1]
    assert client.synth_calls == [["analysis 1-10", "analysis 21-25"]]
    manifest = orjson.loads(Path(manifest_path(str(output))).read_bytes())
    assert manifest["failed_indices"] == [1]


def test_empty_transcript_writes_fallback_without_model_calls(tmp_path: Path, fake_client) -> None:
    source = tmp_path / "empty.json"
    source.write_bytes(b'{"messages": []}')
    output = tmp_path / "digest.md"
    client = fake_client()

    state = DigestPipeline(_config(), client).run_sync(str(source), str(output))

    assert state.succeeded
    assert state.chunk_count == 0
    assert state.chunking_strategy == "empty"
    assert client.analyze_calls == 0
    assert client.synth_calls == []
    assert output.read_text(encoding="utf-8") == NO_MESSAGES_REPORT


def test_missing_input_fails_at_loading(tmp_path: Path, fake_client) -> None:
    client = fake_client()

    state = DigestPipeline(_config(), client).run_sync(
        str(tmp_path / "missing.json"), str(tmp_path / "digest.md")
    )

    assert state.failed_stage == RunStage.LOADING
    assert isinstance(state.error, SourceReadError)
    assert state.records is None
    assert client.analyze_calls == 0


def test_malformed_input_fails_at_loading(tmp_path: Path, fake_client) -> None:
    source = tmp_path / "bad.json"
    source.write_bytes(b'{"messages": [{"id": 1}]}')

    state = DigestPipeline(_config(), fake_client()).run_sync(str(source), str(tmp_path / "o.md"))

    assert state.failed_stage == RunStage.LOADING
    assert isinstance(state.error, SourceFormatError)


def test_invalid_bounds_fail_at_chunking(tmp_path: Path, transcript_file, fake_client) -> None:
    client = fake_client()

    state = DigestPipeline(_config(max_records=0), client).run_sync(
        str(transcript_file(3)), str(tmp_path / "digest.md")
    )

    assert state.failed_stage == RunStage.CHUNKING
    assert isinstance(state.error, ConfigurationError)
    assert state.records is not None
    assert client.analyze_calls == 0


def test_synthesis_failure_fails_at_aggregating(tmp_path: Path, transcript_file, fake_client) -> None:
    output = tmp_path / "digest.md"
    client = fake_client(synth_error=RuntimeError("overloaded"))

    state = DigestPipeline(_config(max_records=10), client).run_sync(str(transcript_file(15)), str(output))

    assert state.failed_stage == RunStage.AGGREGATING
    assert isinstance(state.error, AggregationError)
    assert len(state.partial_results) == 2
    assert not output.exists()


def test_sink_failure_fails_at_persisting(tmp_path: Path, transcript_bytes, fake_client, memory_storage) -> None:
    storage = memory_storage({"chat.json": transcript_bytes(4)}, fail_writes=True)

    state = DigestPipeline(_config(), fake_client(), storage=storage).run_sync("chat.json", "digest.md")

    assert state.failed_stage == RunStage.PERSISTING
    assert isinstance(state.error, SinkWriteError)
    assert state.final_report is not None
    assert storage.writes == []


def test_manifest_can_be_disabled(transcript_bytes, fake_client, memory_storage) -> None:
    storage = memory_storage({"chat.json": transcript_bytes(4)})
    config = _config()
    config.run.write_manifest = False

    state = DigestPipeline(config, fake_client(), storage=storage).run_sync("chat.json", "digest.md")

    assert state.succeeded
    assert storage.writes == ["digest.md"]


def test_deadline_expiry_fails_the_run(tmp_path: Path, transcript_file, fake_client) -> None:
    output = tmp_path / "digest.md"
    config = _config(max_records=1)
    config.run.timeout_seconds = 0.05
    client = fake_client()

    async def stall(records):
        await asyncio.sleep(10)
        return "late"

    client.analyze_unit = stall

    state = DigestPipeline(config, client).run_sync(str(transcript_file(4)), str(output))

    assert state.stage == RunStage.FAILED
    assert state.failed_stage == RunStage.ANALYZING
    assert isinstance(state.error, PipelineTimeoutError)
    assert "0.05s" in state.error_message
    assert not output.exists()


def test_run_state_refuses_to_overwrite_stage_output() -> None:
    state = RunState(input_path="in.json", output_path="out.md")
    state.apply({"final_report": "first"})

    with pytest.raises(RuntimeError):
        state.apply({"final_report": "second"})
    with pytest.raises(KeyError):
        state.apply({"not_a_field": 1})

    assert state.final_report == "first"


def test_local_storage_resolves_relative_paths(tmp_path: Path) -> None:
    storage = LocalStorage(tmp_path)

    storage.write_text("nested/report.md", "hi")

    assert (tmp_path / "nested" / "report.md").read_text(encoding="utf-8") == "hi"
    assert storage.read_bytes("nested/report.md") == b"hi"


def test_manifest_failure_leaves_no_report(transcript_bytes, fake_client, memory_storage) -> None:
    storage = memory_storage({"chat.json": transcript_bytes(4)}, fail_suffix=".manifest.json")

    state = DigestPipeline(_config(), fake_client(), storage=storage).run_sync("chat.json", "digest.md")

    assert state.failed_stage == RunStage.PERSISTING
    assert isinstance(state.error, SinkWriteError)
    assert "digest.md" not in storage.files
    assert "digest.manifest.json" not in storage.files


@pytest.mark.parametrize("timeout", [-1.0, 0.0])
def test_non_positive_deadline_is_rejected_before_running(fake_client, timeout: float) -> None:
    config = _config()
    config.run.timeout_seconds = timeout

    with pytest.raises(ConfigurationError) as exc_info:
        DigestPipeline(config, fake_client())

    assert exc_info.value.key == "run.timeout_seconds"
