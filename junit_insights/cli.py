"""JUnit Insights CLI.

Usage:
    junit-insights init-db
    junit-insights ingest reports/*.xml --job-name test:unit --build-number 42
    junit-insights analyze 7 --json
    junit-insights delete-run 7
"""
import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from .clustering import analyze_run
from .config import get_settings
from .database import get_engine, get_session_factory, init_db
from .errors import IngestionError
from .ingestion import delete_run, ingest
from .models import TestRun
from .schemas import CIMetadata, ReleaseInfo, UploaderInfo
from .tasks import dispatch_all

logger = logging.getLogger(__name__)


def _ci_metadata(args) -> CIMetadata | None:
    if not (args.job_name and args.build_number is not None):
        return None
    return CIMetadata(
        job_name=args.job_name,
        build_number=args.build_number,
        build_time=args.build_time,
        branch=args.branch,
        provider=args.provider,
    )


def cmd_init_db(args, engine) -> int:
    init_db(engine)
    logger.info(f"Initialized database at {engine.url.render_as_string(hide_password=True)}")
    return 0


def cmd_ingest(args, engine) -> int:
    init_db(engine)
    factory = get_session_factory(engine)
    metadata = _ci_metadata(args)
    release = ReleaseInfo(release_tag=args.release_tag)
    uploader = UploaderInfo(source="cli")

    failed = 0
    for path in args.files:
        if not path.exists():
            logger.error(f"File not found: {path}")
            failed += 1
            continue
        session = factory()
        try:
            result = ingest(session, path.read_bytes(), path.name, metadata, uploader, release)
        except IngestionError as e:
            logger.error(f"✗ {path.name}: {e}")
            failed += 1
            continue
        finally:
            session.close()

        if result.duplicate:
            print(f"= {path.name}: duplicate of run {result.run_id}")
            continue
        stats = result.stats
        print(
            f"✓ {path.name}: run {result.run_id} - {stats.total_tests} tests, "
            f"{stats.passed} passed, {stats.total_failures} failed, "
            f"{stats.total_errors} errors, {stats.total_skipped} skipped"
        )
        dispatch_all(result.events, factory)

    return 1 if failed else 0


def cmd_analyze(args, engine) -> int:
    factory = get_session_factory(engine)
    with factory() as session:
        if session.get(TestRun, args.run_id) is None:
            logger.error(f"Test run {args.run_id} not found")
            return 1
        analysis = analyze_run(session, args.run_id)

    if args.json:
        print(json.dumps(analysis.model_dump(by_alias=True), indent=2))
        return 0

    print(f"Run {args.run_id}: {analysis.total_failures} failures")
    for category, count in sorted(analysis.category_counts.items(), key=lambda kv: -kv[1]):
        print(f"  {category}: {count}")
    for pattern in analysis.patterns:
        print(f"\n[{pattern.count}x] {pattern.exception_type} ({pattern.category})")
        print(f"  at {pattern.root_cause}")
        print(f"  {pattern.message}")
        for test in pattern.affected_tests:
            print(f"    - {test.classname}::{test.name}")
    return 0


def cmd_delete_run(args, engine) -> int:
    factory = get_session_factory(engine)
    with factory() as session:
        if not delete_run(session, args.run_id):
            logger.error(f"Test run {args.run_id} not found")
            return 1
    print(f"Deleted test run {args.run_id}")
    return 0


COMMANDS = {
    "init-db": cmd_init_db,
    "ingest": cmd_ingest,
    "analyze": cmd_analyze,
    "delete-run": cmd_delete_run,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="junit-insights",
        description="JUnit XML ingestion and failure analysis",
    )
    parser.add_argument("--db", default=None, help="Database URL (default: from config)")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    p_ingest = sub.add_parser("ingest", help="Ingest JUnit XML files")
    p_ingest.add_argument("files", nargs="+", type=Path)
    p_ingest.add_argument("--job-name", help="CI job name")
    p_ingest.add_argument("--build-number", type=int, help="CI build number")
    p_ingest.add_argument(
        "--build-time", type=datetime.fromisoformat, help="CI build time (ISO 8601)"
    )
    p_ingest.add_argument("--branch", help="Git branch")
    p_ingest.add_argument("--provider", help="CI provider (gitlab, github, jenkins, ...)")
    p_ingest.add_argument("--release-tag", help="Release tag to attach to the run")

    p_analyze = sub.add_parser("analyze", help="Show failure patterns of a run")
    p_analyze.add_argument("run_id", type=int)
    p_analyze.add_argument("--json", action="store_true", help="Print JSON (camelCase)")

    p_delete = sub.add_parser("delete-run", help="Delete a run and everything it owns")
    p_delete.add_argument("run_id", type=int)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = get_engine(args.db)
    try:
        return COMMANDS[args.command](args, engine)
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
