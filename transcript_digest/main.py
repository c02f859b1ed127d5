"""
Transcript Digest - CLI Entry Point
------------------------------------
Exposes Typer commands around the digest pipeline.

Usage:
    python -m transcript_digest.main run data/chat.json reports/chat.md
    python -m transcript_digest.main run data/chat.json reports/chat.md --dry-run
    python -m transcript_digest.main chunks data/chat.json --max-records 25
    python -m transcript_digest.main status reports/chat.md
"""
from __future__ import annotations

import sys

# Windows cp1252 terminal fix: force UTF-8 so emoji in chat exports do not
# crash the Rich console renderer.
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from transcript_digest.chunking.chunker import TranscriptChunker
from transcript_digest.config import PipelineConfig, load_config
from transcript_digest.errors import DigestError, format_error
from transcript_digest.loading.loader import TranscriptLoader
from transcript_digest.pipeline import build_pipeline
from transcript_digest.schemas import ChunkingResult, RunState
from transcript_digest.sink import manifest_path
from transcript_digest.storage import LocalStorage
from transcript_digest.utils.helpers import load_json, truncate_text
from transcript_digest.utils.logger import setup_logger

app = typer.Typer(
    name="transcript-digest",
    help="Transcript Digest - map/reduce LLM analysis of chat transcripts",
    add_completion=False,
)
console = Console()


# --- Helpers ------------------------------------------------------------------

def _load_config_or_exit(path: Optional[str]) -> PipelineConfig:
    try:
        return load_config(path)
    except DigestError as exc:
        console.print(f"[red]{escape(format_error(exc))}[/red]")
        raise typer.Exit(1)


def _print_chunk_plan(result: ChunkingResult) -> None:
    table = Table(
        "Chunk", "Records", "Positions", "Chars", "Tokens", "First message",
        box=box.SIMPLE,
        show_header=True,
        header_style="bold dim",
    )
    for chunk in result.chunks:
        table.add_row(
            str(chunk.index),
            str(chunk.record_count),
            f"{chunk.first_position}-{chunk.last_position}",
            f"{chunk.char_count:,}",
            f"{chunk.token_count:,}" if chunk.token_count else "-",
            escape(truncate_text(chunk.records[0].content.replace("\n", " "), 50)),
        )
    console.print(table)
    console.print(
        f"[green][OK] {result.chunk_count} chunk(s)[/green] from {result.total_records} records "
        f"| strategy={result.strategy} | avg {result.average_chunk_size} records/chunk"
    )


def _print_outcome(state: RunState) -> None:
    if not state.succeeded:
        console.print(
            Panel(
                f"[red]{escape(state.error_message or '')}[/red]",
                title="[red]Run failed[/red]",
                border_style="red",
                expand=False,
            )
        )
        return

    skipped = (
        f"\n  Skipped     : {state.failed_indices}" if state.failed_indices else ""
    )
    console.print(
        Panel(
            "[bold green]Digest Complete[/bold green]\n\n"
            f"  Records     : {state.total_records:,}\n"
            f"  Chunks      : {state.chunk_count:,} ({state.chunking_strategy})\n"
            f"  Report      : {len(state.final_report or ''):,} chars"
            f"{skipped}\n\n"
            f"Saved to [bold]{state.output_path}[/bold]",
            box=box.DOUBLE_EDGE,
            border_style="green",
            expand=False,
        )
    )


# --- Commands -----------------------------------------------------------------

@app.command()
def run(
    input_path: str = typer.Argument(..., help="Transcript JSON export"),
    output_path: str = typer.Argument(..., help="Where to write the Markdown report"),
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to pipeline config YAML"
    ),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", help="Simultaneous chunk analyses"
    ),
    best_effort: bool = typer.Option(
        False, "--best-effort", help="Skip failed chunks instead of stopping the run"
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Overall run deadline in seconds"
    ),
    provider: Optional[str] = typer.Option(
        None, "--provider", help="Analysis provider: openai | anthropic"
    ),
    model: Optional[str] = typer.Option(None, "--model", help="Model name"),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Load and chunk only; no LLM calls, nothing written"
    ),
) -> None:
    """
    Load, chunk, analyse and synthesise a transcript into one report.

    \b
    Steps:
      1. Load + validate the transcript
      2. Chunk within the configured bounds
      3. Analyse every chunk (bounded concurrency)
      4. Synthesise the partial analyses in order
      5. Write the report (+ manifest)
    """
    cfg = _load_config_or_exit(config)
    setup_logger(log_level=cfg.logging.level, log_file=cfg.logging.file)

    if concurrency is not None:
        cfg.analysis.concurrency = concurrency
    if best_effort:
        cfg.analysis.fail_fast = False
    if timeout is not None:
        cfg.run.timeout_seconds = timeout
    if provider is not None:
        cfg.analysis.provider = provider
    if model is not None:
        cfg.analysis.model = model

    if dry_run:
        _chunk_only(input_path, cfg)
        console.print("[yellow]Dry-run mode -- no analysis performed, nothing written.[/yellow]")
        return

    try:
        pipeline = build_pipeline(cfg)
    except DigestError as exc:
        console.print(f"[red]{escape(format_error(exc))}[/red]")
        raise typer.Exit(1)

    with console.status("[cyan]Analysing transcript...[/cyan]"):
        state = pipeline.run_sync(input_path, output_path)

    _print_outcome(state)
    if not state.succeeded:
        raise typer.Exit(1)


@app.command()
def chunks(
    input_path: str = typer.Argument(..., help="Transcript JSON export"),
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to pipeline config YAML"
    ),
    max_records: Optional[int] = typer.Option(None, "--max-records", help="Records per chunk"),
    max_chars: Optional[int] = typer.Option(None, "--max-chars", help="Characters per chunk"),
    thread_aware: bool = typer.Option(
        False, "--thread-aware", help="Prefer splitting at weak conversation boundaries"
    ),
) -> None:
    """Show how a transcript would be chunked, without calling any model."""
    cfg = _load_config_or_exit(config)
    setup_logger(log_level="WARNING", log_file=None)

    if max_records is not None:
        cfg.chunking.max_records = max_records
    if max_chars is not None:
        cfg.chunking.max_chars = max_chars
    if thread_aware:
        cfg.chunking.strategy = "thread_aware"

    _chunk_only(input_path, cfg)


def _chunk_only(input_path: str, cfg: PipelineConfig) -> None:
    try:
        records = TranscriptLoader(LocalStorage()).load(input_path)
        result = TranscriptChunker(cfg.chunking).chunk(records)
    except DigestError as exc:
        console.print(f"[red]{escape(format_error(exc))}[/red]")
        raise typer.Exit(1)
    _print_chunk_plan(result)


@app.command()
def status(
    output_path: str = typer.Argument(..., help="Report path given to a previous run"),
) -> None:
    """Show the manifest written next to a report."""
    path = Path(manifest_path(output_path))
    if not path.exists():
        console.print(f"[yellow]No manifest found at {path}.  Run the pipeline first.[/yellow]")
        raise typer.Exit(1)

    state = load_json(path)
    usage = state.get("usage", {})
    console.print()
    console.print("[bold]Digest Run[/bold]")
    console.print(f"  Run ID     : [dim]{state.get('run_id')}[/dim]")
    console.print(f"  Started    : {state.get('started_at')}")
    console.print(f"  Completed  : {state.get('completed_at')}")
    console.print(f"  Input      : {state.get('input_path')}")
    console.print(f"  Records    : [green]{state.get('total_records')}[/green]")
    console.print(
        f"  Chunks     : {state.get('chunk_count')} "
        f"({state.get('chunking_strategy')}, avg {state.get('average_chunk_size')})"
    )
    if state.get("failed_indices"):
        console.print(f"  Skipped    : [red]{state.get('failed_indices')}[/red]")
    console.print(f"  Report     : {state.get('report_chars')} chars")
    if usage:
        console.print(
            f"  Model      : {usage.get('model')} | {usage.get('calls')} calls | "
            f"tokens={usage.get('prompt_tokens')}+{usage.get('completion_tokens')} | "
            f"cost=${usage.get('estimated_cost_usd', 0):.4f}"
        )
    console.print()


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
