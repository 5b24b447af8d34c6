"""JUnit XML ingestion: parse, deduplicate, persist, recompute.

One upload is processed start to finish before returning. Each suite is
committed on its own, so a failure part-way leaves earlier suites in place
and the FileUpload row marked failed. There is no automatic rollback of
what was already written.

Known limitation: two identical uploads arriving at the same time can both
pass the duplicate check. Only the partial unique index on completed
uploads catches this, at commit time, and the loser is marked failed.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .classifier import extract_error_message
from .config import get_settings
from .errors import IngestionError, PersistenceError
from .hashing import generate_hash
from .models import FileUpload, TestCase, TestResult, TestRun, TestSuite
from .parser import parse_xml, resolve_report
from .schemas import (
    BatchFileResult,
    CaseElement,
    CIMetadata,
    IngestResult,
    ReleaseInfo,
    RunStats,
    SuiteElement,
    UploaderInfo,
)
from .tasks import FlakyDetectionRequested
from .timestamps import parse_timestamp, reconstruct_start_times, to_utc_naive, utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Resolution helpers
# ---------------------------------------------------------------------------

def resolve_run_timestamp(
    ci_metadata: Optional[CIMetadata],
    suites: list[SuiteElement],
    filename: str = "",
) -> tuple[datetime, str]:
    """Run timestamp and where it came from.

    Priority: CI build_time > first suite's timestamp > now.
    """
    if ci_metadata and ci_metadata.build_time:
        timestamp = to_utc_naive(ci_metadata.build_time)
        logger.info(f"Using CI metadata timestamp {timestamp.isoformat()}")
        return timestamp, "ci_metadata.build_time"

    if suites:
        timestamp = parse_timestamp(suites[0].timestamp)
        if timestamp:
            logger.info(f"Using JUnit XML timestamp {timestamp.isoformat()}")
            return timestamp, "junit_xml"

    timestamp = utcnow()
    logger.warning(
        f"No timestamp found in {filename or 'upload'} - using current time "
        f"{timestamp.isoformat()}"
    )
    return timestamp, "current_time"


def most_common_classname(classnames: list[str]) -> Optional[str]:
    """Most frequent non-empty classname; ties go to the first seen."""
    counts = Counter(c for c in classnames if c)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def calculate_stats(session: Session, run_id: int) -> RunStats:
    """Aggregate counters from the run's stored test cases."""
    rows = session.execute(
        select(
            TestCase.status,
            func.count(TestCase.id),
            func.coalesce(func.sum(TestCase.time), 0.0),
        )
        .where(TestCase.run_id == run_id)
        .group_by(TestCase.status)
    ).all()

    by_status = {status: count for status, count, _ in rows}
    return RunStats(
        total_tests=sum(by_status.values()),
        passed=by_status.get("passed", 0),
        total_failures=by_status.get("failed", 0),
        total_errors=by_status.get("error", 0),
        total_skipped=by_status.get("skipped", 0),
        time=float(sum(total for _, _, total in rows)),
    )


def find_completed_upload(session: Session, content_hash: str) -> Optional[FileUpload]:
    return session.scalars(
        select(FileUpload)
        .where(FileUpload.content_hash == content_hash, FileUpload.status == "completed")
        .limit(1)
    ).first()


# ---------------------------------------------------------------------------
# Run / suite / case persistence
# ---------------------------------------------------------------------------

def find_or_create_run(
    session: Session,
    *,
    ci_metadata: Optional[CIMetadata],
    suites: list[SuiteElement],
    filename: str,
    timestamp: datetime,
    content_hash: str,
    upload: FileUpload,
    uploader: Optional[UploaderInfo],
    release: Optional[ReleaseInfo],
    properties: dict,
) -> TestRun:
    release = release or ReleaseInfo()

    if ci_metadata and ci_metadata.job_name and ci_metadata.build_number is not None:
        build_time = to_utc_naive(ci_metadata.build_time) if ci_metadata.build_time else None
        query = select(TestRun).where(
            TestRun.job_name == ci_metadata.job_name,
            TestRun.build_number == ci_metadata.build_number,
        )
        if build_time is None:
            query = query.where(TestRun.build_time.is_(None))
        else:
            query = query.where(TestRun.build_time == build_time)

        run = session.scalars(query.limit(1)).first()
        if run is not None:
            logger.info(
                f"Found existing test run {run.id} for {ci_metadata.job_name} "
                f"#{ci_metadata.build_number} - adding {filename} to it"
            )
            if release.release_tag and not run.release_tag:
                run.release_tag = release.release_tag
                run.release_version = release.release_version
            return run

        run = TestRun(
            name=f"{ci_metadata.job_name} #{ci_metadata.build_number}",
            timestamp=timestamp,
            source="ci_cd",
            file_upload_id=upload.id,
            job_name=ci_metadata.job_name,
            build_number=ci_metadata.build_number,
            build_time=build_time,
            ci_metadata=ci_metadata.model_dump(mode="json"),
            release_tag=release.release_tag,
            release_version=release.release_version,
            properties=properties,
        )
        session.add(run)
        session.flush()
        logger.info(f"Created test run {run.id} '{run.name}' from CI metadata")
        return run

    source = "manual_upload" if uploader and uploader.source == "manual_upload" else "api"
    first_name = suites[0].name if suites else ""
    run = TestRun(
        name=first_name or filename,
        timestamp=timestamp,
        source=source,
        content_hash=content_hash,
        file_upload_id=upload.id,
        release_tag=release.release_tag,
        release_version=release.release_version,
        properties=properties,
    )
    session.add(run)
    session.flush()
    logger.info(f"Created test run {run.id} '{run.name}' without CI metadata")
    return run


def build_test_case(
    case: CaseElement,
    *,
    suite_id: int,
    run_id: int,
    file_upload_id: int,
    started_at: datetime,
    max_message_length: int,
) -> TestCase:
    """TestCase plus its TestResult companion for one <testcase>."""
    error_message = error_type = stack_trace = skipped_message = None
    outcome = case.outcome

    if outcome is not None and outcome.kind in ("failure", "error"):
        error_message = extract_error_message(outcome.text, outcome.message, max_message_length)
        error_type = outcome.type
        stack_trace = outcome.text or outcome.message
    elif outcome is not None:
        skipped_message = outcome.message or outcome.text

    test_case = TestCase(
        suite_id=suite_id,
        run_id=run_id,
        name=case.name,
        classname=case.classname,
        time=case.time,
        status=case.status,
        error_message=error_message,
        error_type=error_type,
        stack_trace=stack_trace,
        assertions=case.assertions,
        file=case.file,
        line=case.line,
        system_out=case.system_out,
        system_err=case.system_err,
        file_upload_id=file_upload_id,
    )
    test_case.result = TestResult(
        suite_id=suite_id,
        run_id=run_id,
        status=case.status,
        time=case.time,
        error_message=error_message,
        error_type=error_type,
        skipped_message=skipped_message,
        stack_trace=stack_trace,
        system_out=case.system_out,
        system_err=case.system_err,
        timestamp=started_at,
    )
    return test_case


def rename_generic_suite(session: Session, test_suite: TestSuite, generic_names: list[str]) -> None:
    """Replace a runner-name suite title with its dominant classname."""
    if test_suite.name not in generic_names:
        return
    classnames = session.scalars(
        select(TestCase.classname)
        .where(TestCase.suite_id == test_suite.id)
        .order_by(TestCase.id)
    ).all()
    new_name = most_common_classname(list(classnames))
    if new_name:
        logger.info(
            f"Renamed generic suite {test_suite.id} '{test_suite.name}' -> '{new_name}'"
        )
        test_suite.name = new_name


def ingest_suite(
    session: Session,
    suite: SuiteElement,
    *,
    run: TestRun,
    file_upload_id: int,
) -> TestSuite:
    settings = get_settings().ingestion
    suite_timestamp = parse_timestamp(suite.timestamp) or run.timestamp

    test_suite = TestSuite(
        run_id=run.id,
        name=suite.name or "Unnamed Suite",
        timestamp=suite_timestamp,
        time=suite.time,
        tests=suite.tests,
        failures=suite.failures,
        errors=suite.errors,
        skipped=suite.skipped,
        hostname=suite.hostname,
        properties=suite.properties,
        file_upload_id=file_upload_id,
    )
    session.add(test_suite)
    session.flush()
    logger.info(
        f"Processing test suite '{test_suite.name}' ({len(suite.cases)} cases, "
        f"{len(suite.properties)} properties)"
    )

    start_times = reconstruct_start_times(suite_timestamp, [c.time for c in suite.cases])
    for case, started_at in zip(suite.cases, start_times):
        session.add(build_test_case(
            case,
            suite_id=test_suite.id,
            run_id=run.id,
            file_upload_id=file_upload_id,
            started_at=started_at,
            max_message_length=settings.max_message_length,
        ))
    session.flush()

    rename_generic_suite(session, test_suite, settings.generic_suite_names)
    return test_suite


def _mark_upload_failed(session: Session, upload_id: int, message: str) -> None:
    try:
        session.execute(
            update(FileUpload)
            .where(FileUpload.id == upload_id)
            .values(status="failed", error_message=message[:2000])
        )
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Could not mark upload {upload_id} as failed: {e}")


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def ingest(
    session: Session,
    xml_content: str | bytes,
    filename: str,
    ci_metadata: Optional[CIMetadata] = None,
    uploader: Optional[UploaderInfo] = None,
    release: Optional[ReleaseInfo] = None,
) -> IngestResult:
    """Ingest one JUnit XML report.

    Returns the run and upload ids with recomputed stats, or duplicate=True
    with the earlier ids when identical content was already ingested. The
    result carries a FlakyDetectionRequested event for the caller to
    dispatch after responding.

    Raises ParseError / MalformedInputError for bad input and
    PersistenceError for storage failures.
    """
    raw = xml_content.encode("utf-8") if isinstance(xml_content, str) else xml_content
    root = parse_xml(raw)
    content_hash = generate_hash(raw)

    existing = find_completed_upload(session, content_hash)
    if existing is not None:
        logger.warning(
            f"Duplicate XML file {filename} (hash {content_hash[:12]}) - "
            f"already ingested as upload {existing.id}, run {existing.run_id}"
        )
        return IngestResult(
            run_id=existing.run_id,
            file_upload_id=existing.id,
            duplicate=True,
        )

    uploader = uploader or UploaderInfo()
    upload = FileUpload(
        filename=filename,
        file_size=len(raw),
        content_hash=content_hash,
        status="processing",
        uploader_ip=uploader.ip,
        uploader_user_agent=uploader.user_agent,
        uploader_source=uploader.source,
    )
    try:
        session.add(upload)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Could not record upload of {filename}: {e}")
        raise PersistenceError(str(e)) from e
    upload_id = upload.id

    try:
        report = resolve_report(root)
        suites = report.suites
        timestamp, source = resolve_run_timestamp(ci_metadata, suites, filename)

        run = find_or_create_run(
            session,
            ci_metadata=ci_metadata,
            suites=suites,
            filename=filename,
            timestamp=timestamp,
            content_hash=content_hash,
            upload=upload,
            uploader=uploader,
            release=release,
            properties=report.properties,
        )
        session.commit()
        run_id = run.id

        for suite in suites:
            ingest_suite(session, suite, run=run, file_upload_id=upload_id)
            session.commit()

        stats = calculate_stats(session, run_id)
        for key, value in stats.model_dump().items():
            setattr(run, key, value)
        upload.status = "completed"
        upload.run_id = run_id
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Error ingesting {filename}: {e}")
        _mark_upload_failed(session, upload_id, str(e))
        if isinstance(e, SQLAlchemyError):
            raise PersistenceError(str(e)) from e
        raise

    logger.info(
        f"Ingested {filename} into run {run_id} (timestamp from {source}): "
        f"{stats.total_tests} tests, {stats.total_failures} failures, "
        f"{stats.total_errors} errors"
    )
    return IngestResult(
        run_id=run_id,
        file_upload_id=upload_id,
        stats=stats,
        events=[FlakyDetectionRequested(run_id=run_id)],
    )


def ingest_batch(
    session: Session,
    files: list[tuple[str, str | bytes]],
    ci_metadata: Optional[CIMetadata] = None,
    uploader: Optional[UploaderInfo] = None,
    release: Optional[ReleaseInfo] = None,
) -> tuple[list[BatchFileResult], list]:
    """Ingest several reports independently; one bad file does not stop the rest.

    Returns per-file results and the follow-up events of the successful ones.
    """
    results = []
    events = []
    for filename, content in files:
        try:
            outcome = ingest(session, content, filename, ci_metadata, uploader, release)
        except IngestionError as e:
            results.append(BatchFileResult(filename=filename, success=False, error=str(e)))
            continue
        results.append(BatchFileResult(
            filename=filename,
            success=True,
            run_id=outcome.run_id,
            file_upload_id=outcome.file_upload_id,
            stats=outcome.stats,
            duplicate=outcome.duplicate,
        ))
        events.extend(outcome.events)
    return results, events


def delete_run(session: Session, run_id: int) -> bool:
    """Delete a run with all its suites, cases and results.

    The run's uploads are kept as history but marked deleted, so the same
    report can be ingested again.
    """
    if session.get(TestRun, run_id) is None:
        return False
    session.execute(delete(TestResult).where(TestResult.run_id == run_id))
    session.execute(delete(TestCase).where(TestCase.run_id == run_id))
    session.execute(delete(TestSuite).where(TestSuite.run_id == run_id))
    session.execute(
        update(FileUpload)
        .where(FileUpload.run_id == run_id)
        .values(run_id=None, status="deleted")
    )
    session.execute(delete(TestRun).where(TestRun.id == run_id))
    session.commit()
    logger.info(f"Deleted test run {run_id}")
    return True
