"""
Storage collaborator
---------------------
The loader and the sink only ever talk to storage through this small
protocol, so tests (and alternative backends) can swap it out.
Implementations raise OSError subclasses on failure.
"""
from __future__ import annotations

from pathlib import Path
from typing import Protocol


class Storage(Protocol):
    def read_bytes(self, path: str) -> bytes:
        ...

    def write_text(self, path: str, text: str) -> None:
        ...

    def delete(self, path: str) -> None:
        ...


class LocalStorage:
    """Local filesystem storage, optionally rooted at a base directory."""

    def __init__(self, base_dir: str | Path | None = None) -> None:
        self.base_dir = Path(base_dir) if base_dir else None

    def _resolve(self, path: str) -> Path:
        p = Path(path)
        if self.base_dir is not None and not p.is_absolute():
            p = self.base_dir / p
        return p

    def read_bytes(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def write_text(self, path: str, text: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")

    def delete(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)
