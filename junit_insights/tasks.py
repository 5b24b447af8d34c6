"""Follow-up work emitted by ingestion and run after the response.

Ingestion returns events instead of starting work itself. The HTTP layer
hands them to FastAPI BackgroundTasks, the CLI dispatches them inline.
Delivery is best-effort: nothing is persisted, nothing is retried.
"""

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import sessionmaker

from .flaky import run_flaky_detection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlakyDetectionRequested:
    run_id: int


def _handle_flaky_detection(event: FlakyDetectionRequested, session_factory: sessionmaker):
    run_flaky_detection(session_factory, event.run_id)


HANDLERS: dict[type, Callable] = {
    FlakyDetectionRequested: _handle_flaky_detection,
}


def dispatch(event, session_factory: sessionmaker) -> None:
    """Run the handler for one event. Never raises."""
    handler = HANDLERS.get(type(event))
    if handler is None:
        logger.warning(f"No handler for event {event!r}")
        return
    try:
        handler(event, session_factory)
    except Exception:
        logger.exception(f"Background task failed for {event!r}")


def dispatch_all(events: list, session_factory: sessionmaker) -> None:
    for event in events:
        dispatch(event, session_factory)
