"""Failure clustering.

Groups failed/errored test cases into ranked failure patterns: by exact
fingerprint first, then by normalized-message similarity within the same
exception type and category. Pure and stateless over its input; the
database helpers at the bottom only load cases and delegate.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, Optional, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from .classifier import (
    calculate_similarity,
    categorize_failure,
    create_fingerprint,
    extract_exception_type,
    extract_root_cause,
)
from .config import get_settings
from .models import FAILURE_STATUSES, TestCase, TestResult, TestRun
from .normalizer import normalize_error_message
from .schemas import AffectedTest, FailureAnalysis, FailurePattern
from .timestamps import utcnow

logger = logging.getLogger(__name__)


class FailureRecord(Protocol):
    """What clustering needs from a test case (ORM row or plain object)."""
    id: Optional[int]
    name: str
    classname: str
    status: str
    time: float
    error_message: Optional[str]
    stack_trace: Optional[str]


@dataclass
class FailureCluster:
    fingerprint: str
    exception_type: str
    root_cause: str
    category: str
    normalized_message: str
    example_message: str
    example_stack_trace: str
    tests: list = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.tests)


def cluster_failures(
    failed_tests: Sequence[FailureRecord],
    similarity_threshold: Optional[float] = None,
) -> list[FailureCluster]:
    """Cluster failures, most common pattern first."""
    if similarity_threshold is None:
        similarity_threshold = get_settings().analysis.similarity_threshold

    clusters: list[FailureCluster] = []
    by_fingerprint: dict[str, FailureCluster] = {}

    for test in failed_tests:
        stack_trace = test.stack_trace or ""
        message = test.error_message or ""
        fingerprint = create_fingerprint(stack_trace, message)
        exception_type = extract_exception_type(stack_trace, message)
        category = categorize_failure(exception_type, message, stack_trace)
        normalized_message = normalize_error_message(message)

        matched = by_fingerprint.get(fingerprint)
        if matched is None:
            matched = next(
                (
                    c for c in clusters
                    if c.exception_type == exception_type
                    and c.category == category
                    and calculate_similarity(c.normalized_message, normalized_message)
                    >= similarity_threshold
                ),
                None,
            )

        if matched is None:
            matched = FailureCluster(
                fingerprint=fingerprint,
                exception_type=exception_type,
                root_cause=extract_root_cause(stack_trace).location,
                category=category,
                normalized_message=normalized_message,
                example_message=message or "No error message",
                example_stack_trace=stack_trace,
            )
            clusters.append(matched)
            by_fingerprint[fingerprint] = matched

        matched.tests.append(test)

    # sort() is stable: equal counts keep first-seen order
    clusters.sort(key=lambda c: c.count, reverse=True)
    return clusters


def analyze_failures(
    test_cases: Iterable[FailureRecord],
    max_affected_tests: Optional[int] = None,
) -> FailureAnalysis:
    """Failure patterns and category histogram for a set of test cases.

    Non-failing cases are ignored. Counts are exact; only the list of
    affected tests per pattern is capped.
    """
    if max_affected_tests is None:
        max_affected_tests = get_settings().analysis.max_affected_tests

    failed_tests = [t for t in test_cases if t.status in FAILURE_STATUSES]
    if not failed_tests:
        return FailureAnalysis(total_failures=0, patterns=[], category_counts={})

    clusters = cluster_failures(failed_tests)

    category_counts: Counter = Counter()
    for cluster in clusters:
        category_counts[cluster.category] += cluster.count

    patterns = [
        FailurePattern(
            id=cluster.fingerprint,
            category=cluster.category,
            exception_type=cluster.exception_type,
            root_cause=cluster.root_cause,
            message=cluster.normalized_message,
            example_message=cluster.example_message,
            example_stack_trace=cluster.example_stack_trace,
            count=cluster.count,
            affected_tests=[
                AffectedTest(
                    id=t.id,
                    name=t.name,
                    classname=t.classname or "",
                    time=t.time or 0.0,
                )
                for t in cluster.tests[:max_affected_tests]
            ],
        )
        for cluster in clusters
    ]

    return FailureAnalysis(
        total_failures=len(failed_tests),
        patterns=patterns,
        category_counts=dict(category_counts),
    )


# ---------------------------------------------------------------------------
# Loading from the database
# ---------------------------------------------------------------------------

def analyze_run(session: Session, run_id: int) -> FailureAnalysis:
    """Failure patterns of one stored run."""
    cases = session.scalars(
        select(TestCase)
        .where(TestCase.run_id == run_id, TestCase.status.in_(FAILURE_STATUSES))
        .order_by(TestCase.id)
    ).all()
    logger.debug(f"Analyzing {len(cases)} failures of run {run_id}")
    return analyze_failures(cases)


def analyze_window(
    session: Session,
    days: Optional[int] = None,
    job_name: Optional[str] = None,
    now=None,
) -> FailureAnalysis:
    """Failure patterns across all runs whose tests started in the last N days."""
    if days is None:
        days = get_settings().analysis.window_days
    since = (now or utcnow()) - timedelta(days=days)

    query = (
        select(TestCase)
        .join(TestResult, TestResult.case_id == TestCase.id)
        .where(
            TestCase.status.in_(FAILURE_STATUSES),
            TestResult.timestamp >= since,
        )
        .order_by(TestResult.timestamp, TestCase.id)
    )
    if job_name:
        query = query.join(TestRun, TestRun.id == TestCase.run_id).where(
            TestRun.job_name == job_name
        )

    cases = session.scalars(query).all()
    logger.debug(
        f"Analyzing {len(cases)} failures since {since.isoformat()}"
        + (f" for job {job_name}" if job_name else "")
    )
    return analyze_failures(cases)
