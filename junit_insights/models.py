"""SQLAlchemy 2.0 models for ingested test reports.

Five tables, owned top-down with cascading deletes:
- test_runs:     one CI build or one standalone upload
- test_suites:   one per <testsuite> element
- test_cases:    one per <testcase>, denormalized onto its run
- test_results:  failure detail + reconstructed start time per case
- file_uploads:  one row per ingestion attempt (dedup by content hash)
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Text,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

from .timestamps import utcnow

CASE_STATUSES = ("passed", "failed", "error", "skipped")
FAILURE_STATUSES = ("failed", "error")
RUN_SOURCES = ("manual_upload", "ci_cd", "api")
UPLOAD_STATUSES = ("processing", "completed", "failed", "deleted")


class Base(DeclarativeBase):
    """Shared declarative base for all report models."""
    pass


class FileUpload(Base):
    """One ingestion attempt: processing → completed | failed.

    Uploads of a deleted run move to deleted.

    content_hash is unique among completed uploads only, so neither a failed
    upload nor a deleted run blocks a retry of the same file.
    """
    __tablename__ = "file_uploads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    content_hash: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="processing")
    run_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("test_runs.id", ondelete="SET NULL"), nullable=True
    )
    uploader_ip: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    uploader_user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    uploader_source: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    upload_timestamp: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_file_uploads_hash", "content_hash"),
        Index(
            "ux_file_uploads_completed_hash",
            "content_hash",
            unique=True,
            sqlite_where=text("status = 'completed'"),
            postgresql_where=text("status = 'completed'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<FileUpload(id={self.id}, file='{self.filename}', "
            f"status='{self.status}', hash={self.content_hash[:12]})>"
        )


class TestRun(Base):
    """A test run: one CI build (possibly many XML files) or one upload."""
    __test__ = False  # prevent pytest collection
    __tablename__ = "test_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    time: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_tests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    passed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source: Mapped[str] = mapped_column(Text, nullable=False, default="api")
    content_hash: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_upload_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # CI identity (job_name, build_number, build_time)
    job_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    build_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    build_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    ci_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    release_tag: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    release_version: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    properties: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    suites: Mapped[list["TestSuite"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_test_runs_ci_identity", "job_name", "build_number", "build_time"),
        Index("ix_test_runs_timestamp", "timestamp"),
        Index("ix_test_runs_content_hash", "content_hash"),
        Index("ix_test_runs_release_tag", "release_tag"),
    )

    def __repr__(self) -> str:
        return (
            f"<TestRun(id={self.id}, name='{self.name}', "
            f"tests={self.total_tests}, failures={self.total_failures})>"
        )


class TestSuite(Base):
    """One <testsuite> element of an upload."""
    __test__ = False  # prevent pytest collection
    __tablename__ = "test_suites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("test_runs.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    time: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # Declared by the XML header, kept for reference only
    tests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hostname: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    properties: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    file_upload_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    run: Mapped["TestRun"] = relationship(back_populates="suites")
    cases: Mapped[list["TestCase"]] = relationship(
        back_populates="suite",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_test_suites_run_id", "run_id"),
    )

    def __repr__(self) -> str:
        return f"<TestSuite(id={self.id}, run={self.run_id}, name='{self.name}')>"


class TestCase(Base):
    """A single executed test. Cross-run identity is (name, classname)."""
    __test__ = False  # prevent pytest collection
    __tablename__ = "test_cases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    suite_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("test_suites.id", ondelete="CASCADE"), nullable=False
    )
    run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("test_runs.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    classname: Mapped[str] = mapped_column(Text, nullable=False, default="")
    time: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stack_trace: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    assertions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    file: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    line: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    system_out: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    system_err: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Only ever set by the flaky detector
    is_flaky: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flaky_detected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    file_upload_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    suite: Mapped["TestSuite"] = relationship(back_populates="cases")
    result: Mapped[Optional["TestResult"]] = relationship(
        back_populates="case",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )

    __table_args__ = (
        Index("ix_test_cases_identity", "name", "classname", "created_at"),
        Index("ix_test_cases_run_status", "run_id", "status"),
        Index("ix_test_cases_suite_id", "suite_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<TestCase(id={self.id}, {self.classname}::{self.name}, "
            f"status='{self.status}')>"
        )


class TestResult(Base):
    """Failure detail and reconstructed start time of one TestCase."""
    __test__ = False  # prevent pytest collection
    __tablename__ = "test_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("test_cases.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    suite_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("test_suites.id", ondelete="CASCADE"), nullable=False
    )
    run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("test_runs.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(Text, nullable=False)
    time: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    skipped_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stack_trace: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    system_out: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    system_err: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    case: Mapped["TestCase"] = relationship(back_populates="result")

    __table_args__ = (
        Index("ix_test_results_run_id", "run_id"),
        Index("ix_test_results_status_ts", "status", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<TestResult(case={self.case_id}, status='{self.status}', "
            f"start={self.timestamp})>"
        )
