"""Pydantic models for report parsing, ingestion and failure analysis."""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Parsed JUnit XML
# ---------------------------------------------------------------------------

class CaseOutcome(BaseModel):
    """The <failure>, <error> or <skipped> child of a <testcase>."""
    kind: Literal["failure", "error", "skipped"]
    message: str = ""
    type: str = ""
    text: str = ""


class CaseElement(BaseModel):
    """One <testcase> element."""
    name: str = "Unnamed Test"
    classname: str = ""
    time: float = 0.0
    assertions: int = 0
    file: str = ""
    line: int = 0
    system_out: str = ""
    system_err: str = ""
    outcome: Optional[CaseOutcome] = None

    @property
    def status(self) -> str:
        if self.outcome is None:
            return "passed"
        return {"failure": "failed", "error": "error", "skipped": "skipped"}[
            self.outcome.kind
        ]


class SuiteElement(BaseModel):
    """One <testsuite> element with its test cases in declaration order."""
    name: str = ""
    timestamp: Optional[str] = None
    time: float = 0.0
    tests: int = 0
    failures: int = 0
    errors: int = 0
    skipped: int = 0
    hostname: str = ""
    properties: dict[str, str] = {}
    cases: list[CaseElement] = []


class SuitesReport(BaseModel):
    """<testsuites> root."""
    kind: Literal["suites"] = "suites"
    suites: list[SuiteElement]
    properties: dict[str, str] = {}


class SuiteReport(BaseModel):
    """Bare <testsuite> root."""
    kind: Literal["suite"] = "suite"
    suite: SuiteElement

    @property
    def suites(self) -> list[SuiteElement]:
        return [self.suite]

    @property
    def properties(self) -> dict[str, str]:
        return self.suite.properties


ParsedReport = Annotated[Union[SuitesReport, SuiteReport], Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

class CIMetadata(BaseModel):
    """CI pipeline context sent alongside an upload."""
    model_config = ConfigDict(extra="allow")

    job_name: Optional[str] = None
    build_number: Optional[int] = None
    build_time: Optional[datetime] = None
    branch: Optional[str] = None
    provider: Optional[str] = None
    build_id: Optional[str] = None
    commit_sha: Optional[str] = None
    repository: Optional[str] = None
    build_url: Optional[str] = None


class UploaderInfo(BaseModel):
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    source: Optional[str] = None


class ReleaseInfo(BaseModel):
    release_tag: Optional[str] = None
    release_version: Optional[str] = None


class RunStats(BaseModel):
    """Aggregates recomputed from the run's stored test cases."""
    total_tests: int = 0
    passed: int = 0
    total_failures: int = 0
    total_errors: int = 0
    total_skipped: int = 0
    time: float = 0.0


class IngestResult(BaseModel):
    run_id: Optional[int] = None
    file_upload_id: int
    stats: Optional[RunStats] = None
    duplicate: bool = False
    # Follow-up work for the task runner (not serialized)
    events: list = Field(default_factory=list, exclude=True)


class BatchFileResult(BaseModel):
    filename: str
    success: bool
    run_id: Optional[int] = None
    file_upload_id: Optional[int] = None
    stats: Optional[RunStats] = None
    duplicate: bool = False
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Failure analysis (camelCase on the wire)
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AffectedTest(_CamelModel):
    id: Optional[int] = None
    name: str
    classname: str = ""
    time: float = 0.0


class FailurePattern(_CamelModel):
    id: str
    category: str
    exception_type: str
    root_cause: str
    message: str
    example_message: str
    example_stack_trace: str
    count: int
    affected_tests: list[AffectedTest] = []


class FailureAnalysis(_CamelModel):
    total_failures: int = 0
    patterns: list[FailurePattern] = []
    category_counts: dict[str, int] = {}
