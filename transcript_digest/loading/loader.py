"""
Transcript Loader
------------------
Reads a chat export from storage and decodes it into an ordered list of
Records. This is the only place document shape is checked:

    {"messages": [{"seqId": 1, "id": "...", "content": "...",
                   "author": {"id": "...", "name": "..."},
                   "timestamp": "2024-01-01T12:00:00Z"}, ...]}

Read failures and shape failures are reported as distinct errors and are
never retried here.
"""
from __future__ import annotations

import orjson
from loguru import logger
from pydantic import ValidationError

from transcript_digest.errors import SourceFormatError, SourceReadError
from transcript_digest.schemas import Record, Transcript
from transcript_digest.storage import Storage


def _describe(exc: ValidationError) -> list[str]:
    """Flatten pydantic errors into 'messages.3.author.id: Field required' lines."""
    lines = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        lines.append(f"{loc}: {err['msg']}")
    return lines


class TranscriptLoader:
    """Loads and validates a transcript document."""

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def load(self, path: str) -> list[Record]:
        try:
            raw = self.storage.read_bytes(path)
        except OSError as exc:
            logger.error(f"[Loader] Read failed for {path}: {exc}")
            raise SourceReadError(path, str(exc)) from exc

        return self.parse(raw, path)

    def parse(self, raw: bytes | str, path: str = "<memory>") -> list[Record]:
        """Decode already-read bytes. Exposed separately for tests and tooling."""
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise SourceFormatError(path, [f"malformed JSON: {exc}"]) from exc

        try:
            transcript = Transcript.model_validate(data)
        except ValidationError as exc:
            errors = _describe(exc)
            logger.error(f"[Loader] {path} failed validation with {len(errors)} error(s)")
            raise SourceFormatError(path, errors) from exc

        records = transcript.messages
        logger.info(f"[Loader] {path} | {len(records)} records loaded")
        return records
