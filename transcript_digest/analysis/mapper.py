"""
Chunk Analyzer (map stage)
---------------------------
Submits every chunk to the analysis client with bounded concurrency and
returns one PartialResult per chunk, sorted by chunk index regardless of
completion order.

Failure policy:
  fail_fast=True  (default) -- the first failing chunk cancels every queued
                               and in-flight sibling and its AnalysisError
                               propagates.
  fail_fast=False           -- every chunk runs; failures are reported as
                               failed_indices next to the successful results.
                               If nothing succeeds, the lowest-index error
                               is raised.

Workers share no mutable state: each owns one immutable Chunk and returns
its own PartialResult.
"""
from __future__ import annotations

import asyncio
import time
from typing import Sequence

from loguru import logger

from transcript_digest.analysis.llm import AnalysisClient
from transcript_digest.errors import AnalysisError, ConfigurationError
from transcript_digest.schemas import Chunk, MapResult, PartialResult


class ChunkAnalyzer:
    """Fans chunks out to the analysis client through a fixed-size semaphore."""

    def __init__(self, client: AnalysisClient, concurrency: int = 3, fail_fast: bool = True) -> None:
        if concurrency < 1:
            raise ConfigurationError("analysis.concurrency", f"must be >= 1, got {concurrency}")
        self.client = client
        self.concurrency = concurrency
        self.fail_fast = fail_fast

    async def analyze(self, chunks: Sequence[Chunk]) -> MapResult:
        if not chunks:
            logger.info("[Analyzer] No chunks to analyse")
            return MapResult(partial_results=[])

        logger.info(
            f"[Analyzer] Analysing {len(chunks)} chunk(s) | concurrency={self.concurrency} | "
            f"policy={'fail-fast' if self.fail_fast else 'best-effort'}"
        )
        semaphore = asyncio.Semaphore(self.concurrency)
        tasks = [
            asyncio.create_task(self._analyze_one(chunk, semaphore), name=f"chunk-{chunk.index}")
            for chunk in chunks
        ]

        try:
            if self.fail_fast:
                results, failed = await self._fail_fast(tasks), []
            else:
                results, failed = await self._best_effort(tasks)
        finally:
            await self._cancel_unfinished(tasks)

        results.sort(key=lambda r: r.chunk_index)
        return MapResult(partial_results=results, failed_indices=failed)

    # --- Workers --------------------------------------------------------------

    async def _analyze_one(self, chunk: Chunk, semaphore: asyncio.Semaphore) -> PartialResult:
        async with semaphore:
            logger.info(
                f"[Analyzer] chunk {chunk.index} started | {chunk.record_count} records, "
                f"{chunk.char_count} chars"
            )
            start = time.perf_counter()
            try:
                text = await self.client.analyze_unit(chunk.records)
            except Exception as exc:
                logger.error(f"[Analyzer] chunk {chunk.index} failed: {exc}")
                raise AnalysisError(chunk.index, str(exc)) from exc

            elapsed = time.perf_counter() - start
            logger.info(f"[Analyzer] chunk {chunk.index} done | {len(text)} chars | {elapsed:.2f}s")
        return PartialResult(chunk_index=chunk.index, text=text)

    # --- Policies -------------------------------------------------------------

    async def _fail_fast(self, tasks: list[asyncio.Task]) -> list[PartialResult]:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        errors = [t.exception() for t in done if not t.cancelled() and t.exception() is not None]
        if errors:
            if pending:
                logger.warning(f"[Analyzer] Cancelling {len(pending)} pending chunk(s) after failure")
            raise _lowest_index(errors)
        return [t.result() for t in tasks]

    async def _best_effort(self, tasks: list[asyncio.Task]) -> tuple[list[PartialResult], list[int]]:
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        results: list[PartialResult] = []
        errors: list[BaseException] = []
        for outcome in outcomes:
            if isinstance(outcome, PartialResult):
                results.append(outcome)
            elif isinstance(outcome, AnalysisError):
                errors.append(outcome)
            else:
                raise outcome

        if errors and not results:
            raise _lowest_index(errors)

        failed = sorted(e.chunk_index for e in errors)
        if failed:
            logger.warning(f"[Analyzer] {len(failed)} chunk(s) failed and were skipped: {failed}")
        return results, failed

    @staticmethod
    async def _cancel_unfinished(tasks: list[asyncio.Task]) -> None:
        unfinished = [t for t in tasks if not t.done()]
        for task in unfinished:
            task.cancel()
        if unfinished:
            await asyncio.gather(*unfinished, return_exceptions=True)
        # Sibling failures that lost the race are discarded with the run
        for task in tasks:
            if task.done() and not task.cancelled():
                task.exception()


def _lowest_index(errors: list[BaseException]) -> BaseException:
    analysis_errors = [e for e in errors if isinstance(e, AnalysisError)]
    if analysis_errors:
        return min(analysis_errors, key=lambda e: e.chunk_index)
    return errors[0]
