from __future__ import annotations

import asyncio
import random
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import orjson
import pytest

from transcript_digest.schemas import Author, Record


class FakeAnalysisClient:
    """In-process analysis client with controllable latency and failures."""

    def __init__(
        self,
        fail_on: Optional[set[int]] = None,
        max_delay: float = 0.0,
        synth_error: Optional[Exception] = None,
        seed: int = 7,
    ) -> None:
        self.fail_on = fail_on or set()
        self.max_delay = max_delay
        self.synth_error = synth_error
        self.random = random.Random(seed)
        self.in_flight = 0
        self.max_in_flight = 0
        self.started: list[int] = []
        self.completed: list[int] = []
        self.cancelled: list[int] = []
        self.synth_calls: list[list[str]] = []

    async def analyze_unit(self, records: Sequence[Record]) -> str:
        first = records[0].position
        self.started.append(first)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.max_delay:
                await asyncio.sleep(self.random.uniform(0, self.max_delay))
            else:
                await asyncio.sleep(0)
            if first in self.fail_on:
                raise RuntimeError(f"model refused excerpt starting at {first}")
            self.completed.append(first)
            return f"analysis {first}-{records[-1].position}"
        except asyncio.CancelledError:
            self.cancelled.append(first)
            raise
        finally:
            self.in_flight -= 1

    async def synthesize(self, partials: Sequence[str]) -> str:
        self.synth_calls.append(list(partials))
        if self.synth_error is not None:
            raise self.synth_error
        return "# Report\n\n" + "\n".join(partials)

    @property
    def analyze_calls(self) -> int:
        return len(self.started)


class MemoryStorage:
    """
    Dict-backed storage. Every write raises when fail_writes is set; with
    fail_suffix only paths ending in that suffix fail.
    """

    def __init__(
        self,
        files: Optional[dict[str, bytes]] = None,
        fail_writes: bool = False,
        fail_suffix: Optional[str] = None,
    ) -> None:
        self.files: dict[str, bytes] = dict(files or {})
        self.fail_writes = fail_writes
        self.fail_suffix = fail_suffix
        self.writes: list[str] = []
        self.deleted: list[str] = []

    def read_bytes(self, path: str) -> bytes:
        if path not in self.files:
            raise FileNotFoundError(2, "No such file or directory", path)
        return self.files[path]

    def write_text(self, path: str, text: str) -> None:
        if self.fail_writes or (self.fail_suffix and path.endswith(self.fail_suffix)):
            raise PermissionError(13, "Permission denied", path)
        self.writes.append(path)
        self.files[path] = text.encode("utf-8")

    def delete(self, path: str) -> None:
        self.deleted.append(path)
        self.files.pop(path, None)


@pytest.fixture
def make_records() -> Callable[..., list[Record]]:
    """Build `count` records at positions start..start+count-1."""

    def _make(
        count: int,
        start: int = 0,
        content: str | Callable[[int], str] = "hello",
        authors: Sequence[str] = ("alice", "bob"),
        minutes_apart: Optional[float] = None,
    ) -> list[Record]:
        base = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        records = []
        for i in range(count):
            pos = start + i
            author = authors[i % len(authors)]
            records.append(
                Record(
                    id=f"m{pos}",
                    position=pos,
                    content=content(pos) if callable(content) else content,
                    author=Author(id=author, name=author.title()),
                    timestamp=base + timedelta(minutes=minutes_apart * i)
                    if minutes_apart is not None
                    else None,
                )
            )
        return records

    return _make


@pytest.fixture
def transcript_bytes() -> Callable[..., bytes]:
    """Serialise a chat export in its on-disk shape (seqId, nested author)."""

    def _dump(count: int, content: str = "hello") -> bytes:
        messages: list[dict[str, Any]] = [
            {
                "id": f"m{i}",
                "seqId": i + 1,
                "content": f"{content} {i}",
                "author": {"id": f"u{i % 3}", "name": f"User {i % 3}"},
                "timestamp": f"2024-03-01T12:{i % 60:02d}:00Z",
            }
            for i in range(count)
        ]
        return orjson.dumps({"messages": messages})

    return _dump


@pytest.fixture
def transcript_file(tmp_path: Path, transcript_bytes: Callable[..., bytes]) -> Callable[..., Path]:
    def _write(count: int, name: str = "chat.json") -> Path:
        path = tmp_path / name
        path.write_bytes(transcript_bytes(count))
        return path

    return _write


@pytest.fixture
def fake_client() -> Callable[..., FakeAnalysisClient]:
    return FakeAnalysisClient


@pytest.fixture
def memory_storage() -> Callable[..., MemoryStorage]:
    return MemoryStorage
