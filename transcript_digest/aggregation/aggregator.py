"""
Report Aggregator (reduce stage)
---------------------------------
Feeds the partial analyses, in chunk order, to the synthesis entry point of
the analysis client and returns the final report text. Nothing is written
to storage here; a synthesis failure ends the run.
"""
from __future__ import annotations

from typing import Sequence

from loguru import logger

from transcript_digest.analysis.llm import AnalysisClient
from transcript_digest.analysis.prompts import NO_MESSAGES_REPORT
from transcript_digest.errors import AggregationError
from transcript_digest.schemas import PartialResult


class ReportAggregator:
    def __init__(self, client: AnalysisClient) -> None:
        self.client = client

    async def aggregate(self, partial_results: Sequence[PartialResult]) -> str:
        ordered = sorted(partial_results, key=lambda p: p.chunk_index)
        if not ordered:
            logger.info("[Aggregator] No partial analyses - returning empty-transcript report")
            return NO_MESSAGES_REPORT

        logger.info(f"[Aggregator] Synthesising {len(ordered)} partial analyses")
        try:
            report = await self.client.synthesize([p.text for p in ordered])
        except Exception as exc:
            logger.error(f"[Aggregator] Synthesis failed: {exc}")
            raise AggregationError(len(ordered), str(exc)) from exc

        logger.info(f"[Aggregator] Report ready | {len(report)} chars")
        return report
