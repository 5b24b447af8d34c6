"""Timestamp parsing and per-test start time reconstruction.

Everything is stored as naive UTC. Offsets are converted, naive values are
taken to already be UTC.
"""

import logging
from datetime import datetime, timedelta, timezone
from itertools import accumulate
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass a datetime through).

    Returns None for empty or unparseable input instead of raising.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc_naive(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return to_utc_naive(datetime.fromisoformat(text))
    except ValueError:
        logger.warning(f"Unparseable timestamp {value!r}")
        return None


def reconstruct_start_times(
    suite_timestamp: datetime, durations: Iterable[float]
) -> list[datetime]:
    """Estimated start time of each test in declaration order.

    Test N starts at the suite timestamp plus the summed durations of tests
    1..N-1. JUnit only records the suite start and per-test durations.
    """
    offsets = accumulate(durations, initial=0.0)
    starts = [suite_timestamp + timedelta(seconds=s) for s in offsets]
    # accumulate(initial=...) yields one extra trailing total
    return starts[:-1]
