"""JUnit Insights.

JUnit XML ingestion with upload dedup and timestamp reconstruction,
failure clustering across pytest, Java and JavaScript traces, and
flaky test detection.
"""

__version__ = "0.1.0"

from .models import Base, FileUpload, TestCase, TestResult, TestRun, TestSuite
from .database import get_engine, get_session, get_session_factory, init_db
from .errors import IngestionError, MalformedInputError, ParseError, PersistenceError
from .parser import parse_report
from .ingestion import delete_run, ingest, ingest_batch
from .clustering import analyze_failures, analyze_run, analyze_window, cluster_failures
from .flaky import detect_flaky, run_flaky_detection

__all__ = [
    "__version__",
    # Models
    "Base",
    "FileUpload",
    "TestRun",
    "TestSuite",
    "TestCase",
    "TestResult",
    # Database
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_db",
    # Errors
    "IngestionError",
    "ParseError",
    "MalformedInputError",
    "PersistenceError",
    # Ingestion
    "parse_report",
    "ingest",
    "ingest_batch",
    "delete_run",
    # Analysis
    "cluster_failures",
    "analyze_failures",
    "analyze_run",
    "analyze_window",
    "detect_flaky",
    "run_flaky_detection",
]
