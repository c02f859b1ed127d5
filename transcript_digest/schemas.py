"""
Core Pydantic schemas for the Transcript Digest pipeline.

Records are decoded once at the loader boundary; every later stage works on
these typed, immutable models and never re-validates shape.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    computed_field,
    field_validator,
    model_validator,
)


# --- Source records -----------------------------------------------------------

class Author(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: StrictStr = Field(min_length=1)
    name: StrictStr = Field(min_length=1)


class Record(BaseModel):
    """
    One message of the source transcript.

    `position` is the sole ordering key. Exports call it `seqId`; both
    spellings are accepted.
    """

    model_config = ConfigDict(frozen=True)

    id: StrictStr = Field(min_length=1)
    position: StrictInt = Field(
        ge=0, validation_alias=AliasChoices("position", "seqId", "seq_id")
    )
    content: StrictStr = ""
    author: Author
    timestamp: Optional[datetime] = None

    @field_validator("author", mode="before")
    @classmethod
    def _author_from_tag(cls, value: Any) -> Any:
        # Plain string tags ("alice") are promoted to {id, name}
        if isinstance(value, str):
            return {"id": value, "name": value}
        return value

    @property
    def char_count(self) -> int:
        return len(self.content)


class Transcript(BaseModel):
    """Top-level document shape: {"messages": [...]}, ordered by position."""

    messages: list[Record]

    @model_validator(mode="after")
    def _positions_strictly_increase(self) -> "Transcript":
        for prev, cur in zip(self.messages, self.messages[1:]):
            if cur.position <= prev.position:
                raise ValueError(
                    f"message {cur.id!r} has position {cur.position}, "
                    f"expected > {prev.position}"
                )
        return self


# --- Chunking -----------------------------------------------------------------

class Chunk(BaseModel):
    """A contiguous, non-empty run of records. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    index: int                               # Position within the chunk sequence
    records: tuple[Record, ...] = Field(min_length=1)
    token_count: int = 0                     # Populated by the chunker

    @computed_field
    @property
    def record_count(self) -> int:
        return len(self.records)

    @computed_field
    @property
    def char_count(self) -> int:
        return sum(r.char_count for r in self.records)

    @property
    def first_position(self) -> int:
        return self.records[0].position

    @property
    def last_position(self) -> int:
        return self.records[-1].position


class ChunkingResult(BaseModel):
    chunks: list[Chunk]
    strategy: str                            # "empty" | "single_chunk" | "bounded_greedy" | "thread_aware"
    total_records: int
    chunk_count: int
    average_chunk_size: float

    @property
    def chunk_sizes(self) -> list[int]:
        return [c.record_count for c in self.chunks]


# --- Map / Reduce -------------------------------------------------------------

class PartialResult(BaseModel):
    """Analysis output for exactly one chunk."""

    model_config = ConfigDict(frozen=True)

    chunk_index: int
    text: str


class MapResult(BaseModel):
    partial_results: list[PartialResult]     # Sorted by chunk_index
    failed_indices: list[int] = Field(default_factory=list)


# --- Run state ----------------------------------------------------------------

class RunStage(str, Enum):
    PENDING = "pending"
    LOADING = "loading"
    CHUNKING = "chunking"
    ANALYZING = "analyzing"
    AGGREGATING = "aggregating"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


class RunState(BaseModel):
    """
    Accumulator owned by the pipeline orchestrator.

    Stage outputs are folded in through apply(); a field written by one
    stage is never overwritten by a later one. Stage bookkeeping (stage,
    failed_stage, error) is set by the orchestrator directly.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    input_path: str
    output_path: str
    stage: RunStage = RunStage.PENDING
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    # Stage outputs
    records: Optional[list[Record]] = None
    chunks: Optional[list[Chunk]] = None
    partial_results: Optional[list[PartialResult]] = None
    failed_indices: Optional[list[int]] = None
    final_report: Optional[str] = None

    # Descriptive metadata
    chunking_strategy: Optional[str] = None
    total_records: Optional[int] = None
    chunk_count: Optional[int] = None
    average_chunk_size: Optional[float] = None

    # Failure bookkeeping
    failed_stage: Optional[RunStage] = None
    error: Optional[BaseException] = Field(default=None, exclude=True)
    error_message: Optional[str] = None

    def apply(self, delta: dict[str, Any]) -> None:
        """Fold a stage's output into the state, refusing to overwrite."""
        for key, value in delta.items():
            if key not in RunState.model_fields:
                raise KeyError(f"RunState has no field {key!r}")
            if getattr(self, key) is not None:
                raise RuntimeError(f"RunState.{key} was already populated")
            setattr(self, key, value)

    @property
    def succeeded(self) -> bool:
        return self.stage == RunStage.DONE

    def summary(self) -> dict[str, Any]:
        """JSON-friendly view without the bulky records/chunks payloads."""
        return self.model_dump(
            mode="json",
            exclude={"records", "chunks", "partial_results", "final_report", "error"},
        ) | {
            "report_chars": len(self.final_report) if self.final_report else 0,
        }
