"""JUnit Insights: FastAPI application.

Ingests JUnit XML reports and serves failure-pattern analysis over the
stored results. Flaky detection runs as a background task after the
upload response has been sent.

Run locally:
  uvicorn junit_insights.app:app --reload
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from pydantic import ValidationError
from sqlalchemy.orm import Session

from . import __version__
from .clustering import analyze_run, analyze_window
from .config import get_settings
from .database import get_engine, get_session_factory, init_db
from .errors import ParseError, PersistenceError
from .ingestion import delete_run, ingest, ingest_batch
from .models import TestRun
from .schemas import BatchFileResult, CIMetadata, ReleaseInfo, UploaderInfo
from .tasks import dispatch_all

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = None
session_factory = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the engine and tables on startup."""
    global engine, session_factory
    engine = get_engine()
    init_db(engine)
    session_factory = get_session_factory(engine)
    logger.info(f"JUnit Insights v{app.version} started")
    logger.info(f"Database: {engine.url.render_as_string(hide_password=True)}")
    yield
    engine.dispose()
    logger.info("Shutting down")


app = FastAPI(
    title="JUnit Insights",
    description="JUnit XML ingestion, failure clustering and flaky test detection",
    version=__version__,
    lifespan=lifespan,
)


def get_db():
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _uploader(request: Request, source: Optional[str]) -> UploaderInfo:
    return UploaderInfo(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        source=source,
    )


def _ci_metadata(raw: Optional[str]) -> Optional[CIMetadata]:
    if not raw:
        return None
    try:
        return CIMetadata.model_validate_json(raw)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid ci_metadata: {e}")


# ---------------------------------------------------------------------------
# Health Check
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": "junit-insights",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": engine.dialect.name if engine else "not initialized",
    }


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

@app.post("/api/v1/upload", status_code=201)
def upload_xml(
    request: Request,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    ci_metadata: Optional[str] = Form(None),
    release_tag: Optional[str] = Form(None),
    release_version: Optional[str] = Form(None),
    source: Optional[str] = Form(None),
    db: Session = Depends(get_db),
):
    """Ingest one JUnit XML report.

    ci_metadata is a JSON object (job_name, build_number, build_time, ...).
    Uploads matching an existing CI run are merged into it.
    """
    filename = file.filename or ""
    if not filename.lower().endswith(".xml"):
        raise HTTPException(status_code=400, detail="Only XML files are allowed")

    content = file.file.read()
    if len(content) > get_settings().ingestion.max_upload_bytes:
        raise HTTPException(status_code=413, detail="File too large")

    metadata = _ci_metadata(ci_metadata)
    try:
        result = ingest(
            db,
            content,
            filename,
            ci_metadata=metadata,
            uploader=_uploader(request, source),
            release=ReleaseInfo(release_tag=release_tag, release_version=release_version),
        )
    except ParseError as e:
        logger.error(f"Upload of {filename} rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError as e:
        logger.error(f"Upload of {filename} failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    if result.events:
        background_tasks.add_task(dispatch_all, result.events, session_factory)

    return {"success": True, "data": result.model_dump()}


@app.post("/api/v1/upload/batch", status_code=201)
def upload_batch(
    request: Request,
    background_tasks: BackgroundTasks,
    files: list[UploadFile] = File(...),
    ci_metadata: Optional[str] = Form(None),
    release_tag: Optional[str] = Form(None),
    release_version: Optional[str] = Form(None),
    source: Optional[str] = Form(None),
    db: Session = Depends(get_db),
):
    """Ingest several reports; each file succeeds or fails on its own."""
    metadata = _ci_metadata(ci_metadata)
    max_bytes = get_settings().ingestion.max_upload_bytes

    rejected = []
    accepted = []
    for upload in files:
        filename = upload.filename or ""
        if not filename.lower().endswith(".xml"):
            rejected.append(BatchFileResult(
                filename=filename, success=False, error="Only XML files are allowed"
            ))
            continue
        content = upload.file.read()
        if len(content) > max_bytes:
            rejected.append(BatchFileResult(filename=filename, success=False, error="File too large"))
            continue
        accepted.append((filename, content))

    results, events = ingest_batch(
        db,
        accepted,
        ci_metadata=metadata,
        uploader=_uploader(request, source),
        release=ReleaseInfo(release_tag=release_tag, release_version=release_version),
    )
    if events:
        background_tasks.add_task(dispatch_all, events, session_factory)

    results = results + rejected
    succeeded = sum(1 for r in results if r.success)
    logger.info(f"Batch upload: {succeeded}/{len(results)} files ingested")
    return {
        "success": succeeded > 0,
        "data": {
            "total": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "results": [r.model_dump() for r in results],
        },
    }


# ---------------------------------------------------------------------------
# Failure analysis
# ---------------------------------------------------------------------------

@app.get("/api/v1/analysis/failure-patterns/{run_id}")
def run_failure_patterns(run_id: int, db: Session = Depends(get_db)):
    """Failure patterns of a single run."""
    if db.get(TestRun, run_id) is None:
        raise HTTPException(status_code=404, detail=f"Test run {run_id} not found")
    analysis = analyze_run(db, run_id)
    return {"success": True, "data": analysis.model_dump(by_alias=True)}


@app.get("/api/v1/analytics/failure-patterns")
def window_failure_patterns(
    days: Optional[int] = None,
    job_name: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Failure patterns across all runs of the last N days.

    days defaults to analysis.window_days from the settings.
    """
    if days is None:
        days = get_settings().analysis.window_days
    if days < 1:
        raise HTTPException(status_code=400, detail="days must be at least 1")
    analysis = analyze_window(db, days=days, job_name=job_name)
    return {
        "success": True,
        "data": analysis.model_dump(by_alias=True),
        "meta": {"days": days, "jobName": job_name},
    }


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

@app.delete("/api/v1/runs/{run_id}")
def remove_run(run_id: int, db: Session = Depends(get_db)):
    """Delete a run with its suites, cases and results."""
    if not delete_run(db, run_id):
        raise HTTPException(status_code=404, detail=f"Test run {run_id} not found")
    return {"success": True, "message": f"Test run {run_id} deleted"}
