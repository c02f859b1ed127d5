"""
Prompt templates for chunk analysis and report synthesis.

Keeping templates in a separate module makes them easy to iterate on
without touching the client code.
"""
from __future__ import annotations

from typing import Sequence

from transcript_digest.schemas import Record

# ---------------------------------------------------------------------------
# Map: one chunk of messages
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are an analyst who studies community chat transcripts about {topic} and \
distils them into practical insight for maintainers and documentation writers.

RULES:
- Base every finding ONLY on the messages provided. Do not invent facts.
- Quote message ids (e.g. #123) when a finding comes from specific messages.
- Be concise. Prefer bullet points.
"""

UNIT_ANALYSIS_PROMPT = """\
Analyse this excerpt of a chat transcript ({count} messages, positions \
{first}-{last}) and extract:

1. Common Questions - what people are asking
2. Topics & Patterns - techniques, APIs or concepts being discussed
3. Pain Points - what people struggle with or find confusing
4. Best Practices - solutions and recommendations given in the thread
5. Code Examples - notable snippets, with one line of context each

Return Markdown with exactly those five headings. Write "None" under a
heading with nothing to report.

MESSAGES:
{messages}
"""

# ---------------------------------------------------------------------------
# Reduce: all partial analyses, in transcript order
# ---------------------------------------------------------------------------

SYNTHESIS_PROMPT = """\
You have received {count} partial analyses of consecutive excerpts of one \
chat transcript, in transcript order. Synthesise them into one final report.

Merge duplicates, rank recurring items by how often they appear across \
excerpts, and keep message id references where useful.

Use these sections:

## Executive Summary
## Common Questions
## Topics & Patterns
## Pain Points
## Best Practices
## Code Examples
## Recommendations

PARTIAL ANALYSES:
{partials}
"""

PARTIAL_SEPARATOR = "\n\n---\n\n"

# ---------------------------------------------------------------------------
# Fallback when the transcript has no messages
# ---------------------------------------------------------------------------

NO_MESSAGES_REPORT = (
    "# Transcript Digest\n\n"
    "The transcript contained no messages, so there was nothing to analyse.\n"
)


def format_records(records: Sequence[Record]) -> str:
    """Render records one per line: '#<id> [<position>] <author>: <content>'."""
    lines = []
    for r in records:
        stamp = f" {r.timestamp.isoformat()}" if r.timestamp else ""
        lines.append(f"#{r.id} [{r.position}{stamp}] {r.author.name}: {r.content}")
    return "\n".join(lines)


def build_unit_prompt(records: Sequence[Record]) -> str:
    return UNIT_ANALYSIS_PROMPT.format(
        count=len(records),
        first=records[0].position if records else 0,
        last=records[-1].position if records else 0,
        messages=format_records(records),
    )


def build_synthesis_prompt(partials: Sequence[str]) -> str:
    numbered = [f"### Excerpt {i}\n\n{text}" for i, text in enumerate(partials, start=1)]
    return SYNTHESIS_PROMPT.format(
        count=len(partials),
        partials=PARTIAL_SEPARATOR.join(numbered),
    )
