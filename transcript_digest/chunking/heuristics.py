"""
Conversation heuristics used by the thread-aware chunking strategy.

A boundary between two consecutive records is scored on four signals:

  1. Sequence adjacency    +100 consecutive positions, +50 for a gap of one
  2. Q&A author pattern    +50  a different author answers a question
  3. Same-author follow-up +30
  4. Time proximity        +25 (<=5 min), +10 (<=15 min), -20 (>30 min)

Low scores mark places where a conversation thread most likely ends.
"""
from __future__ import annotations

import re

from transcript_digest.schemas import Record

_QUESTION_RE = re.compile(
    r"how (do|to|can)|is there|what('s| is)|can i|why (does|is|are)", re.IGNORECASE
)
_ANSWER_RE = re.compile(r"^(yes|no|you can|try|use|the answer|check out)", re.IGNORECASE)


def is_likely_question(content: str) -> bool:
    return "?" in content or bool(_QUESTION_RE.search(content))


def is_likely_answer(content: str) -> bool:
    return (
        len(content) > 100
        or "```" in content
        or bool(_ANSWER_RE.match(content.lstrip()))
    )


def relationship_score(previous: Record, current: Record) -> int:
    """Score how strongly `current` continues the thread `previous` belongs to."""
    score = 0

    gap = current.position - previous.position
    if gap == 1:
        score += 100
    elif gap == 2:
        score += 50

    same_author = current.author.id == previous.author.id
    if (
        not same_author
        and is_likely_question(previous.content)
        and is_likely_answer(current.content)
    ):
        score += 50

    if same_author:
        score += 30

    prev_ts, cur_ts = previous.timestamp, current.timestamp
    # Naive and aware datetimes cannot be compared; skip the signal then
    if prev_ts and cur_ts and (prev_ts.tzinfo is None) == (cur_ts.tzinfo is None):
        minutes = (cur_ts - prev_ts).total_seconds() / 60
        if minutes <= 5:
            score += 25
        elif minutes <= 15:
            score += 10
        elif minutes > 30:
            score -= 20

    return score
