"""Flaky test detection.

A failing test is flaky when its recent history, matched by (name,
classname) across runs, contains both passes and failures. The flag is
one-way: set on the newly failing case, never cleared.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings
from .database import get_session
from .models import FAILURE_STATUSES, TestCase
from .timestamps import utcnow

logger = logging.getLogger(__name__)


def recent_history(session: Session, name: str, classname: str, limit: int) -> list[TestCase]:
    """Most recent executions of one logical test, newest first."""
    return list(session.scalars(
        select(TestCase)
        .where(TestCase.name == name, TestCase.classname == classname)
        .order_by(TestCase.created_at.desc(), TestCase.id.desc())
        .limit(limit)
    ))


def is_flaky_history(statuses: list[str], min_history: int) -> bool:
    has_passed = "passed" in statuses
    has_failed = any(s in FAILURE_STATUSES for s in statuses)
    return len(statuses) >= min_history and has_passed and has_failed


def detect_flaky(
    session: Session,
    run_id: int,
    now: Optional[datetime] = None,
) -> list[int]:
    """Flag the run's failed/errored cases whose recent history oscillates.

    Returns the ids of the cases flagged in this pass.
    """
    settings = get_settings().flaky
    now = now or utcnow()

    failing = session.scalars(
        select(TestCase).where(
            TestCase.run_id == run_id, TestCase.status.in_(FAILURE_STATUSES)
        )
    ).all()

    flagged = []
    for case in failing:
        history = recent_history(session, case.name, case.classname, settings.history_limit)
        if not is_flaky_history([h.status for h in history], settings.min_history):
            continue
        if not case.is_flaky:
            case.is_flaky = True
            case.flaky_detected_at = now
        flagged.append(case.id)
        logger.info(f"Flaky test detected: {case.classname}::{case.name}")

    session.flush()
    return flagged


def run_flaky_detection(session_factory: sessionmaker, run_id: int) -> list[int]:
    """Background entry point: own session, errors logged and swallowed."""
    try:
        with get_session(session_factory) as session:
            flagged = detect_flaky(session, run_id)
        logger.info(f"Flaky detection for run {run_id}: {len(flagged)} flagged")
        return flagged
    except Exception as e:
        logger.error(f"Error detecting flaky tests for run {run_id}: {e}")
        return []
