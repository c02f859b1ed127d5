"""
Report Sink
------------
Persists the final report and, optionally, a run manifest next to it:

    reports/digest.md
    reports/digest.manifest.json

The sink is only reached after every earlier stage succeeded. If the
manifest cannot be written the report is removed again, so a failed run
never leaves a report or manifest behind.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from loguru import logger

from transcript_digest.errors import SinkWriteError
from transcript_digest.storage import LocalStorage, Storage
from transcript_digest.utils.helpers import dumps_json


def manifest_path(output_path: str) -> str:
    """reports/digest.md -> reports/digest.manifest.json"""
    return str(Path(output_path).with_suffix(".manifest.json"))


class ReportSink:
    def __init__(self, storage: Optional[Storage] = None, write_manifest: bool = True) -> None:
        self.storage = storage or LocalStorage()
        self.write_manifest = write_manifest

    def write(self, output_path: str, report: str, manifest: Optional[dict[str, Any]] = None) -> None:
        self._write(output_path, report)
        logger.info(f"[Sink] Report saved -> {output_path} ({len(report)} chars)")

        if self.write_manifest and manifest is not None:
            path = manifest_path(output_path)
            try:
                self._write(path, dumps_json(manifest).decode("utf-8"))
            except SinkWriteError:
                self._discard(output_path)
                raise
            logger.debug(f"[Sink] Manifest saved -> {path}")

    def _discard(self, path: str) -> None:
        # A report without its manifest counts as a failed run
        try:
            self.storage.delete(path)
        except OSError as exc:
            logger.error(f"[Sink] Could not remove {path} after manifest failure: {exc}")
            return
        logger.warning(f"[Sink] Removed {path} after manifest failure")

    def _write(self, path: str, text: str) -> None:
        try:
            self.storage.write_text(path, text)
        except OSError as exc:
            logger.error(f"[Sink] Write failed for {path}: {exc}")
            raise SinkWriteError(path, str(exc)) from exc
