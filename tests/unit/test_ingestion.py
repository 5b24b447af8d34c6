"""Tests for JUnit XML ingestion.

Covers:
  - Run / suite / case / result persistence
  - Upload dedup by content hash
  - Aggregates recomputed from stored cases
  - Start time reconstruction and run timestamp priority
  - CI metadata run merging
  - Generic suite name correction
  - Failure paths: malformed input, invalid XML, storage errors
  - Batch ingestion and run deletion
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from junit_insights import ingestion
from junit_insights.errors import MalformedInputError, ParseError, PersistenceError
from junit_insights.ingestion import (
    delete_run,
    ingest,
    ingest_batch,
    most_common_classname,
    resolve_run_timestamp,
)
from junit_insights.models import FileUpload, TestCase, TestResult, TestRun, TestSuite
from junit_insights.schemas import CIMetadata, ReleaseInfo, SuiteElement, UploaderInfo
from junit_insights.tasks import FlakyDetectionRequested


T = datetime(2024, 1, 15, 10, 0, 0)

INFLATED_TOTALS_XML = """<testsuite name="tests.test_inflated" timestamp="2024-01-15T10:00:00"
    tests="10" failures="5" errors="3" skipped="2" time="99.0">
  <testcase classname="tests.test_inflated" name="test_a" time="0.5"/>
  <testcase classname="tests.test_inflated" name="test_b" time="0.25">
    <failure message="nope">E       assert 1 == 2</failure>
  </testcase>
</testsuite>"""


def _count(session, model):
    return session.scalar(select(func.count()).select_from(model))


def _case_named(session, name):
    return session.scalars(select(TestCase).where(TestCase.name == name)).one()


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestIngest:

    def test_creates_hierarchy(self, session, sample_xml):
        result = ingest(session, sample_xml, "report.xml")

        assert result.duplicate is False
        assert _count(session, TestRun) == 1
        assert _count(session, TestSuite) == 2
        assert _count(session, TestCase) == 5
        assert _count(session, TestResult) == 5

    def test_stats(self, session, sample_xml):
        stats = ingest(session, sample_xml, "report.xml").stats
        assert stats.total_tests == 5
        assert stats.passed == 2
        assert stats.total_failures == 1
        assert stats.total_errors == 1
        assert stats.total_skipped == 1
        assert stats.time == pytest.approx(4.5)

    def test_run_attributes(self, session, sample_xml):
        result = ingest(session, sample_xml, "report.xml")
        run = session.get(TestRun, result.run_id)
        assert run.name == "tests.test_math"
        assert run.source == "api"
        assert run.timestamp == T
        assert run.content_hash is not None
        assert run.file_upload_id == result.file_upload_id
        assert run.properties == {"ci": "gitlab"}
        assert run.total_tests == 5

    def test_upload_completed(self, session, sample_xml):
        result = ingest(session, sample_xml, "report.xml")
        upload = session.get(FileUpload, result.file_upload_id)
        assert upload.status == "completed"
        assert upload.run_id == result.run_id
        assert upload.filename == "report.xml"
        assert upload.file_size == len(sample_xml.encode("utf-8"))

    def test_emits_flaky_detection_event(self, session, sample_xml):
        result = ingest(session, sample_xml, "report.xml")
        assert result.events == [FlakyDetectionRequested(run_id=result.run_id)]
        assert "events" not in result.model_dump()

    def test_failure_details(self, session, sample_xml):
        ingest(session, sample_xml, "report.xml")
        case = _case_named(session, "test_divide")
        assert case.status == "failed"
        assert case.error_message == "assert 2.0 == 3"
        assert case.error_type == "AssertionError"
        assert "tests/test_math.py:12: AssertionError" in case.stack_trace
        assert case.result.status == "failed"
        assert case.result.error_message == "assert 2.0 == 3"

    def test_skipped_message(self, session, sample_xml):
        ingest(session, sample_xml, "report.xml")
        case = _case_named(session, "test_migrate")
        assert case.status == "skipped"
        assert case.result.skipped_message == "no migrations"
        assert case.error_message is None

    def test_suite_attributes(self, session, sample_xml):
        ingest(session, sample_xml, "report.xml")
        suite = session.scalars(select(TestSuite).where(TestSuite.name == "tests.test_math")).one()
        assert suite.tests == 3
        assert suite.hostname == "runner-1"
        assert suite.timestamp == T

    def test_uploader_info(self, session, sample_xml):
        uploader = UploaderInfo(ip="10.0.0.1", user_agent="curl/8.0", source="manual_upload")
        result = ingest(session, sample_xml, "report.xml", uploader=uploader)
        upload = session.get(FileUpload, result.file_upload_id)
        assert upload.uploader_ip == "10.0.0.1"
        assert upload.uploader_user_agent == "curl/8.0"
        assert session.get(TestRun, result.run_id).source == "manual_upload"

    def test_release_info(self, session, sample_xml):
        release = ReleaseInfo(release_tag="v1.2.0", release_version="1.2.0")
        result = ingest(session, sample_xml, "report.xml", release=release)
        run = session.get(TestRun, result.run_id)
        assert run.release_tag == "v1.2.0"
        assert run.release_version == "1.2.0"


class TestAggregates:

    def test_counts_come_from_cases_not_xml_totals(self, session):
        result = ingest(session, INFLATED_TOTALS_XML, "inflated.xml")
        run = session.get(TestRun, result.run_id)
        assert run.total_tests == 2
        assert run.passed == 1
        assert run.total_failures == 1
        assert run.total_errors == 0
        assert run.total_skipped == 0
        assert run.time == pytest.approx(0.75)

    def test_declared_suite_counts_kept_for_reference(self, session):
        ingest(session, INFLATED_TOTALS_XML, "inflated.xml")
        suite = session.scalars(select(TestSuite)).one()
        assert suite.tests == 10
        assert suite.failures == 5

    def test_run_counts_match_cases(self, session, sample_xml):
        result = ingest(session, sample_xml, "report.xml")
        run = session.get(TestRun, result.run_id)
        statuses = session.scalars(select(TestCase.status).where(TestCase.run_id == run.id)).all()
        assert run.total_tests == len(statuses)
        assert run.passed == statuses.count("passed")
        assert run.total_failures == statuses.count("failed")
        assert run.total_errors == statuses.count("error")
        assert run.total_skipped == statuses.count("skipped")


# ---------------------------------------------------------------------------
# Dedup
# ---------------------------------------------------------------------------

class TestDuplicates:

    def test_same_bytes_twice(self, session, sample_xml):
        first = ingest(session, sample_xml, "report.xml")
        second = ingest(session, sample_xml, "report-copy.xml")

        assert second.duplicate is True
        assert second.run_id == first.run_id
        assert second.file_upload_id == first.file_upload_id
        assert second.events == []
        assert _count(session, TestRun) == 1
        assert _count(session, FileUpload) == 1
        assert _count(session, TestCase) == 5

    def test_str_and_bytes_are_the_same_content(self, session, sample_xml):
        ingest(session, sample_xml, "report.xml")
        assert ingest(session, sample_xml.encode("utf-8"), "report.xml").duplicate is True

    def test_whitespace_change_is_new_content(self, session, sample_xml):
        ingest(session, sample_xml, "report.xml")
        assert ingest(session, sample_xml + "\n", "report.xml").duplicate is False
        assert _count(session, TestRun) == 2

    def test_failed_upload_does_not_block_retry(self, session, sample_xml, monkeypatch):
        def broken(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("disk full"))

        with monkeypatch.context() as m:
            m.setattr(ingestion, "ingest_suite", broken)
            with pytest.raises(PersistenceError):
                ingest(session, sample_xml, "report.xml")

        result = ingest(session, sample_xml, "report.xml")
        assert result.duplicate is False
        statuses = session.scalars(select(FileUpload.status).order_by(FileUpload.id)).all()
        assert statuses == ["failed", "completed"]


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

class TestTimestamps:

    def test_second_test_starts_after_first(self, session, sample_xml):
        ingest(session, sample_xml, "report.xml")
        assert _case_named(session, "test_add").result.timestamp == T
        assert _case_named(session, "test_sub").result.timestamp == T + timedelta(seconds=1.0)
        assert _case_named(session, "test_divide").result.timestamp == T + timedelta(seconds=3.0)

    def test_each_suite_uses_its_own_timestamp(self, session, sample_xml):
        ingest(session, sample_xml, "report.xml")
        second_suite_start = datetime(2024, 1, 15, 10, 0, 5)
        assert _case_named(session, "test_connect").result.timestamp == second_suite_start
        assert _case_named(session, "test_migrate").result.timestamp == (
            second_suite_start + timedelta(seconds=0.8)
        )

    def test_suite_without_timestamp_uses_run_timestamp(self, session):
        xml = (
            "<testsuites>"
            '<testsuite name="a" timestamp="2024-01-15T10:00:00"><testcase name="t1" time="1"/></testsuite>'
            '<testsuite name="b"><testcase name="t2" time="1"/></testsuite>'
            "</testsuites>"
        )
        ingest(session, xml, "report.xml")
        assert _case_named(session, "t2").result.timestamp == T

    def test_ci_build_time_wins(self, session, sample_xml):
        build_time = datetime(2024, 3, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        ci = CIMetadata(job_name="test:unit", build_number=7, build_time=build_time)
        result = ingest(session, sample_xml, "report.xml", ci_metadata=ci)
        assert session.get(TestRun, result.run_id).timestamp == datetime(2024, 3, 1, 10, 0)

    def test_falls_back_to_now(self, session):
        xml = '<testsuite name="s"><testcase name="t" time="0.1"/></testsuite>'
        before = datetime.now(timezone.utc).replace(tzinfo=None)
        result = ingest(session, xml, "report.xml")
        after = datetime.now(timezone.utc).replace(tzinfo=None)
        assert before <= session.get(TestRun, result.run_id).timestamp <= after

    def test_resolve_run_timestamp_sources(self):
        suite = SuiteElement(name="s", timestamp="2024-01-15T10:00:00")
        broken = SuiteElement(name="s", timestamp="not a date")
        ci = CIMetadata(build_time=datetime(2024, 2, 1))

        assert resolve_run_timestamp(ci, [suite]) == (datetime(2024, 2, 1), "ci_metadata.build_time")
        assert resolve_run_timestamp(None, [suite]) == (T, "junit_xml")
        assert resolve_run_timestamp(None, [broken])[1] == "current_time"
        assert resolve_run_timestamp(None, [])[1] == "current_time"

    def test_now_fallback_is_logged(self, caplog):
        resolve_run_timestamp(None, [], "x.xml")
        assert "No timestamp found in x.xml" in caplog.text


# ---------------------------------------------------------------------------
# CI metadata
# ---------------------------------------------------------------------------

class TestCIRuns:

    def _ci(self, **overrides):
        data = {
            "job_name": "test:unit",
            "build_number": 42,
            "build_time": datetime(2024, 3, 1, 9, 0),
            "branch": "main",
            "provider": "gitlab",
        }
        data.update(overrides)
        return CIMetadata(**data)

    def test_creates_named_ci_run(self, session, sample_xml):
        result = ingest(session, sample_xml, "report.xml", ci_metadata=self._ci())
        run = session.get(TestRun, result.run_id)
        assert run.name == "test:unit #42"
        assert run.source == "ci_cd"
        assert run.job_name == "test:unit"
        assert run.build_number == 42
        assert run.ci_metadata["branch"] == "main"

    def test_later_files_merge_into_run(self, session, sample_xml, runner_suite_xml):
        first = ingest(session, sample_xml, "unit.xml", ci_metadata=self._ci())
        second = ingest(session, runner_suite_xml, "api.xml", ci_metadata=self._ci())

        assert second.run_id == first.run_id
        assert second.file_upload_id != first.file_upload_id
        assert _count(session, TestRun) == 1
        assert _count(session, TestSuite) == 3
        assert second.stats.total_tests == 8
        assert second.stats.passed == 5

    def test_different_build_is_new_run(self, session, sample_xml, runner_suite_xml):
        first = ingest(session, sample_xml, "unit.xml", ci_metadata=self._ci())
        second = ingest(session, runner_suite_xml, "api.xml", ci_metadata=self._ci(build_number=43))
        assert second.run_id != first.run_id

    def test_different_build_time_is_new_run(self, session, sample_xml, runner_suite_xml):
        first = ingest(session, sample_xml, "unit.xml", ci_metadata=self._ci())
        second = ingest(
            session, runner_suite_xml, "api.xml",
            ci_metadata=self._ci(build_time=datetime(2024, 3, 2, 9, 0)),
        )
        assert second.run_id != first.run_id

    def test_merge_without_build_time(self, session, sample_xml, runner_suite_xml):
        first = ingest(session, sample_xml, "unit.xml", ci_metadata=self._ci(build_time=None))
        second = ingest(session, runner_suite_xml, "api.xml", ci_metadata=self._ci(build_time=None))
        assert second.run_id == first.run_id

    def test_job_name_alone_is_not_ci_identity(self, session, sample_xml):
        ci = CIMetadata(job_name="test:unit")
        result = ingest(session, sample_xml, "report.xml", ci_metadata=ci)
        assert session.get(TestRun, result.run_id).source == "api"


# ---------------------------------------------------------------------------
# Suite names
# ---------------------------------------------------------------------------

class TestGenericSuiteNames:

    def test_pytest_suite_renamed_to_dominant_classname(self, session, runner_suite_xml):
        ingest(session, runner_suite_xml, "report.xml")
        suite = session.scalars(select(TestSuite)).one()
        assert suite.name == "tests.test_api"

    def test_unnamed_suite(self, session):
        xml = '<testsuite timestamp="2024-01-15T10:00:00"><testcase classname="pkg.mod" name="t"/></testsuite>'
        ingest(session, xml, "report.xml")
        assert session.scalars(select(TestSuite)).one().name == "pkg.mod"

    def test_specific_name_kept(self, session, sample_xml):
        ingest(session, sample_xml, "report.xml")
        names = session.scalars(select(TestSuite.name).order_by(TestSuite.id)).all()
        assert names == ["tests.test_math", "tests.test_db"]

    def test_generic_name_without_classnames_kept(self, session):
        xml = '<testsuite name="pytest" timestamp="2024-01-15T10:00:00"><testcase name="t"/></testsuite>'
        ingest(session, xml, "report.xml")
        assert session.scalars(select(TestSuite)).one().name == "pytest"

    def test_most_common_classname(self):
        assert most_common_classname(["a", "b", "b", "a", "b"]) == "b"
        assert most_common_classname(["a", "b"]) == "a"
        assert most_common_classname(["", ""]) is None
        assert most_common_classname([]) is None


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------

class TestIngestFailures:

    def test_invalid_xml_persists_nothing(self, session):
        with pytest.raises(ParseError):
            ingest(session, "<testsuite><testcase>", "broken.xml")
        assert _count(session, FileUpload) == 0

    def test_malformed_input_marks_upload_failed(self, session):
        with pytest.raises(MalformedInputError):
            ingest(session, "<report><item/></report>", "weird.xml")
        upload = session.scalars(select(FileUpload)).one()
        assert upload.status == "failed"
        assert "neither" in upload.error_message
        assert _count(session, TestRun) == 0

    def test_storage_error_wrapped(self, session, sample_xml, monkeypatch):
        def broken(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("disk full"))

        monkeypatch.setattr(ingestion, "ingest_suite", broken)
        with pytest.raises(PersistenceError) as exc_info:
            ingest(session, sample_xml, "report.xml")

        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert session.scalars(select(FileUpload.status)).one() == "failed"

    def test_committed_suites_survive_later_failure(self, session, sample_xml, monkeypatch):
        original = ingestion.ingest_suite
        calls = []

        def fail_second(session, suite, **kwargs):
            calls.append(suite.name)
            if len(calls) == 2:
                raise OperationalError("INSERT", {}, Exception("disk full"))
            return original(session, suite, **kwargs)

        monkeypatch.setattr(ingestion, "ingest_suite", fail_second)
        with pytest.raises(PersistenceError):
            ingest(session, sample_xml, "report.xml")

        assert _count(session, TestSuite) == 1
        assert _count(session, TestCase) == 3


# ---------------------------------------------------------------------------
# Batch and delete
# ---------------------------------------------------------------------------

class TestBatch:

    def test_each_file_independent(self, session, sample_xml, runner_suite_xml):
        results, events = ingest_batch(session, [
            ("unit.xml", sample_xml),
            ("broken.xml", "<testsuite>"),
            ("api.xml", runner_suite_xml),
        ])
        assert [r.success for r in results] == [True, False, True]
        assert "Invalid XML" in results[1].error
        assert len(events) == 2
        assert _count(session, TestRun) == 2

    def test_duplicates_reported(self, session, sample_xml):
        results, events = ingest_batch(session, [("a.xml", sample_xml), ("b.xml", sample_xml)])
        assert [r.duplicate for r in results] == [False, True]
        assert results[0].run_id == results[1].run_id
        assert len(events) == 1

    def test_shared_ci_metadata_merges(self, session, sample_xml, runner_suite_xml):
        ci = CIMetadata(job_name="test:all", build_number=1)
        results, _ = ingest_batch(
            session, [("a.xml", sample_xml), ("b.xml", runner_suite_xml)], ci_metadata=ci
        )
        assert results[0].run_id == results[1].run_id


class TestDeleteRun:

    def test_cascades(self, session, sample_xml):
        result = ingest(session, sample_xml, "report.xml")
        assert delete_run(session, result.run_id) is True

        assert _count(session, TestRun) == 0
        assert _count(session, TestSuite) == 0
        assert _count(session, TestCase) == 0
        assert _count(session, TestResult) == 0

    def test_upload_kept_and_detached(self, session, sample_xml):
        result = ingest(session, sample_xml, "report.xml")
        delete_run(session, result.run_id)
        session.expire_all()
        upload = session.get(FileUpload, result.file_upload_id)
        assert upload.run_id is None
        assert upload.status == "deleted"

    def test_same_report_ingests_again(self, session, sample_xml):
        first = ingest(session, sample_xml, "report.xml")
        delete_run(session, first.run_id)

        again = ingest(session, sample_xml, "report.xml")
        assert again.duplicate is False
        assert again.run_id is not None
        assert again.file_upload_id != first.file_upload_id
        assert again.stats.total_tests == 5
        assert _count(session, TestRun) == 1

    def test_other_runs_untouched(self, session, sample_xml, runner_suite_xml):
        keep = ingest(session, runner_suite_xml, "keep.xml")
        drop = ingest(session, sample_xml, "drop.xml")
        delete_run(session, drop.run_id)
        assert _count(session, TestRun) == 1
        assert _count(session, TestCase) == 3
        assert session.get(TestRun, keep.run_id) is not None

    def test_missing_run(self, session):
        assert delete_run(session, 999) is False
