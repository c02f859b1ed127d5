"""
Transcript Chunker
-------------------
Splits an ordered list of Records into contiguous, bounded chunks that are
each small enough for one analysis call.

Two hard bounds apply to every chunk:
  - max_records : number of records
  - max_chars   : cumulative content length

Strategy selection:
  - EMPTY          -- no records, no chunks.
  - SINGLE_CHUNK   -- the whole transcript already fits both bounds and is
                      analysed in one call.
  - BOUNDED_GREEDY -- single pass, close the current chunk whenever the next
                      record would break either bound.
  - THREAD_AWARE   -- the greedy pass, but once a chunk reaches its soft
                      target it is also closed at weak conversation
                      boundaries (see heuristics.relationship_score) so
                      question/answer threads tend to stay together.

A record that alone exceeds max_chars is never split or truncated; it
occupies a chunk of its own. Concatenating the chunks in order always
reproduces the input exactly.
"""
from __future__ import annotations

import math
from functools import lru_cache
from typing import Callable, Optional, Sequence

import tiktoken
from loguru import logger

from transcript_digest.chunking.heuristics import relationship_score
from transcript_digest.config import ChunkingConfig
from transcript_digest.errors import ConfigurationError
from transcript_digest.schemas import Chunk, ChunkingResult, Record

# ── Constants ─────────────────────────────────────────────────────────────────

EMPTY = "empty"
SINGLE_CHUNK = "single_chunk"
BOUNDED_GREEDY = "bounded_greedy"
THREAD_AWARE = "thread_aware"

BoundaryCheck = Callable[[list[Record], Record], bool]


@lru_cache(maxsize=1)
def _encoder() -> tiktoken.Encoding:
    return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    """Count BPE tokens using the cl100k_base encoder (GPT-3.5/4 family)."""
    return len(_encoder().encode(text))


# ── Main Chunker ──────────────────────────────────────────────────────────────

class TranscriptChunker:
    """
    Partitions transcripts according to a ChunkingConfig.

    Usage:
        chunker = TranscriptChunker(ChunkingConfig(max_records=10))
        result = chunker.chunk(records)
    """

    def __init__(self, config: Optional[ChunkingConfig] = None) -> None:
        self.config = config or ChunkingConfig()

    def validate(self) -> None:
        """Raise ConfigurationError for bounds that cannot produce valid chunks."""
        cfg = self.config
        if cfg.max_records <= 0:
            raise ConfigurationError("chunking.max_records", f"must be positive, got {cfg.max_records}")
        if cfg.max_chars <= 0:
            raise ConfigurationError("chunking.max_chars", f"must be positive, got {cfg.max_chars}")
        if not 0.0 < cfg.soft_target_ratio <= 1.0:
            raise ConfigurationError(
                "chunking.soft_target_ratio",
                f"must be in (0, 1], got {cfg.soft_target_ratio}",
            )

    def chunk(self, records: Sequence[Record]) -> ChunkingResult:
        """
        Chunk a record sequence.

        Args:
            records: Records in source order.

        Returns:
            ChunkingResult with the chunks and descriptive metadata.
        """
        self.validate()

        if not records:
            strategy, groups = EMPTY, []
        elif self._fits_single_chunk(records):
            strategy, groups = SINGLE_CHUNK, [list(records)]
        elif self.config.strategy == "thread_aware":
            strategy, groups = THREAD_AWARE, self._pack(records, self._weak_boundary)
        else:
            strategy, groups = BOUNDED_GREEDY, self._pack(records)

        chunks = [self._build_chunk(i, group) for i, group in enumerate(groups)]
        average = round(len(records) / len(chunks), 2) if chunks else 0.0

        result = ChunkingResult(
            chunks=chunks,
            strategy=strategy,
            total_records=len(records),
            chunk_count=len(chunks),
            average_chunk_size=average,
        )
        logger.info(
            f"[Chunker] {len(records)} records | {strategy} -> "
            f"{result.chunk_count} chunk(s) | avg {average} records/chunk"
        )
        logger.debug(f"[Chunker] chunk sizes: {result.chunk_sizes}")
        return result

    # --- Strategy: Single Chunk ----------------------------------------------

    def _fits_single_chunk(self, records: Sequence[Record]) -> bool:
        if len(records) > self.config.max_records:
            return False
        return sum(r.char_count for r in records) <= self.config.max_chars

    # --- Strategy: Bounded Greedy --------------------------------------------

    def _pack(
        self,
        records: Sequence[Record],
        weak_boundary: Optional[BoundaryCheck] = None,
    ) -> list[list[Record]]:
        groups: list[list[Record]] = []
        current: list[Record] = []
        chars = 0

        for record in records:
            over_bound = (
                len(current) + 1 > self.config.max_records
                or chars + record.char_count > self.config.max_chars
            )
            if current and (over_bound or (weak_boundary and weak_boundary(current, record))):
                groups.append(current)
                current, chars = [], 0

            current.append(record)
            chars += record.char_count

        if current:
            groups.append(current)
        return groups

    # --- Strategy: Thread Aware ----------------------------------------------

    def _weak_boundary(self, current: list[Record], record: Record) -> bool:
        soft_target = max(1, math.ceil(self.config.max_records * self.config.soft_target_ratio))
        if len(current) < soft_target:
            return False
        return relationship_score(current[-1], record) < self.config.min_relationship_score

    # --- Helpers -------------------------------------------------------------

    def _build_chunk(self, index: int, group: list[Record]) -> Chunk:
        tokens = 0
        if self.config.estimate_tokens:
            tokens = count_tokens("\n".join(r.content for r in group))
        return Chunk(index=index, records=tuple(group), token_count=tokens)
