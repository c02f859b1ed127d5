"""
Digest Pipeline
----------------
Orchestrates one run over a transcript:

    LOADING -> CHUNKING -> ANALYZING -> AGGREGATING -> PERSISTING -> DONE
                                                      \
    any stage error ----------------------------------> FAILED

The orchestrator is the only writer of RunState. Each stage reads what it
needs from the state and returns a delta that is folded in between stages,
so concurrent map workers never touch the state.

On failure the run records the failed stage and the error and stops; the
sink is never called. The optional run deadline covers loading through
aggregation and, on expiry, fails the run exactly like a stage error.
"""
from __future__ import annotations

import asyncio
import functools
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from transcript_digest.aggregation.aggregator import ReportAggregator
from transcript_digest.analysis.llm import AnalysisClient, build_client
from transcript_digest.analysis.mapper import ChunkAnalyzer
from transcript_digest.chunking.chunker import TranscriptChunker
from transcript_digest.config import PipelineConfig
from transcript_digest.errors import (
    ConfigurationError,
    DigestError,
    PipelineTimeoutError,
    format_error,
)
from transcript_digest.loading.loader import TranscriptLoader
from transcript_digest.schemas import RunStage, RunState
from transcript_digest.sink import ReportSink
from transcript_digest.storage import LocalStorage, Storage

Delta = dict[str, Any]
Step = Callable[[RunState], Awaitable[Delta]]


class DigestPipeline:
    """
    Wires loader, chunker, analyzer, aggregator and sink into one run.

    Usage:
        pipeline = DigestPipeline(config, client)
        state = pipeline.run_sync("data/chat.json", "reports/chat.md")
    """

    def __init__(
        self,
        config: PipelineConfig,
        client: AnalysisClient,
        storage: Optional[Storage] = None,
        sink: Optional[ReportSink] = None,
    ) -> None:
        timeout = config.run.timeout_seconds
        if timeout is not None and timeout <= 0:
            raise ConfigurationError("run.timeout_seconds", f"must be > 0, got {timeout}")
        self.config = config
        self.client = client
        self.storage = storage or LocalStorage()
        self.loader = TranscriptLoader(self.storage)
        self.chunker = TranscriptChunker(config.chunking)
        self.analyzer = ChunkAnalyzer(
            client,
            concurrency=config.analysis.concurrency,
            fail_fast=config.analysis.fail_fast,
        )
        self.aggregator = ReportAggregator(client)
        self.sink = sink or ReportSink(self.storage, write_manifest=config.run.write_manifest)

    # --- Public API -----------------------------------------------------------

    async def run(self, input_path: str, output_path: str) -> RunState:
        """Execute every stage and return the final RunState (DONE or FAILED)."""
        state = RunState(input_path=str(input_path), output_path=str(output_path))
        timeout = self.config.run.timeout_seconds
        logger.info(
            f"[Pipeline] Run {state.run_id[:8]} | {state.input_path} -> {state.output_path}"
            + (f" | deadline {timeout:g}s" if timeout is not None else "")
        )

        try:
            if timeout is not None:
                await asyncio.wait_for(self._analyse(state), timeout=timeout)
            else:
                await self._analyse(state)
        except asyncio.TimeoutError:
            self._fail(state, PipelineTimeoutError(timeout, state.stage.value))
            return state
        except DigestError as exc:
            self._fail(state, exc)
            return state
        except Exception as exc:
            self._fail(state, exc)
            raise

        try:
            await self._persist(state)
        except DigestError as exc:
            self._fail(state, exc)
            return state

        state.stage = RunStage.DONE
        state.completed_at = datetime.utcnow()
        logger.info(
            f"[Pipeline] Run {state.run_id[:8]} done | {state.total_records} records | "
            f"{state.chunk_count} chunks | report {len(state.final_report or '')} chars"
        )
        return state

    def run_sync(self, input_path: str, output_path: str) -> RunState:
        return asyncio.run(self.run(input_path, output_path))

    # --- Stages ---------------------------------------------------------------

    async def _analyse(self, state: RunState) -> None:
        steps: list[tuple[RunStage, Step]] = [
            (RunStage.LOADING, self._load),
            (RunStage.CHUNKING, self._chunk),
            (RunStage.ANALYZING, self._map),
            (RunStage.AGGREGATING, self._reduce),
        ]
        for stage, step in steps:
            state.stage = stage
            logger.debug(f"[Pipeline] -> {stage.value}")
            state.apply(await step(state))

    async def _load(self, state: RunState) -> Delta:
        records = await _in_executor(self.loader.load, state.input_path)
        return {"records": records}

    async def _chunk(self, state: RunState) -> Delta:
        result = self.chunker.chunk(state.records or [])
        return {
            "chunks": result.chunks,
            "chunking_strategy": result.strategy,
            "total_records": result.total_records,
            "chunk_count": result.chunk_count,
            "average_chunk_size": result.average_chunk_size,
        }

    async def _map(self, state: RunState) -> Delta:
        mapped = await self.analyzer.analyze(state.chunks or [])
        return {
            "partial_results": mapped.partial_results,
            "failed_indices": mapped.failed_indices,
        }

    async def _reduce(self, state: RunState) -> Delta:
        report = await self.aggregator.aggregate(state.partial_results or [])
        return {"final_report": report}

    async def _persist(self, state: RunState) -> None:
        state.stage = RunStage.PERSISTING
        await _in_executor(
            self.sink.write, state.output_path, state.final_report or "", self._manifest(state)
        )

    # --- Helpers --------------------------------------------------------------

    def _manifest(self, state: RunState) -> dict[str, Any]:
        manifest = state.summary()
        manifest["stage"] = RunStage.DONE.value
        manifest["completed_at"] = datetime.utcnow().isoformat()
        usage_summary = getattr(self.client, "usage_summary", None)
        if callable(usage_summary):
            manifest["usage"] = usage_summary()
        return manifest

    @staticmethod
    def _fail(state: RunState, exc: BaseException) -> None:
        failed_stage = state.stage
        state.failed_stage = failed_stage
        state.stage = RunStage.FAILED
        state.error = exc
        state.error_message = format_error(exc, failed_stage.value)
        state.completed_at = datetime.utcnow()
        logger.error(f"[Pipeline] Run {state.run_id[:8]} failed | {state.error_message}")


async def _in_executor(fn: Callable[..., Any], *args: Any) -> Any:
    """Run blocking storage I/O in the default thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args))


def build_pipeline(config: PipelineConfig, storage: Optional[Storage] = None) -> DigestPipeline:
    """Create a pipeline with the client configured in config.analysis."""
    return DigestPipeline(config, build_client(config.analysis), storage=storage)
