"""Context budget: trim oversized conversations without losing pinned messages."""

from __future__ import annotations

import logging
from typing import List, Sequence

from models import Message

log = logging.getLogger("ollama_proxy")


def total_length(messages: Sequence[Message]) -> int:
    """Aggregate content length in characters."""
    return sum(len(m.content) for m in messages)


def truncate_messages(messages: Sequence[Message], budget: int) -> List[Message]:
    """
    Reduce ``messages`` to fit ``budget`` characters.

    Pinned (system) messages are always kept, in order. Non-pinned messages
    are taken newest first while the running total (pinned included) stays
    within budget; the walk stops at the first one that does not fit, so
    nothing older than a dropped message survives. Kept messages keep their
    original relative order after the pinned block.
    """
    before = total_length(messages)
    if before <= budget:
        return list(messages)

    pinned = [m for m in messages if m.is_pinned]
    running = total_length(pinned)

    kept_reversed: List[Message] = []
    for m in reversed(messages):
        if m.is_pinned:
            continue
        if running + len(m.content) > budget:
            break
        kept_reversed.append(m)
        running += len(m.content)

    result = pinned + list(reversed(kept_reversed))
    log.debug(
        "Prompt trimmed from %d to %d characters (budget=%d, kept=%d/%d messages)",
        before,
        running,
        budget,
        len(result),
        len(messages),
    )
    return result
