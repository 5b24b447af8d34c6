"""
JUnit Insights Test Configuration

Shared fixtures for all tests.
"""
import pytest

from junit_insights import config
from junit_insights.database import get_engine, get_session_factory, init_db


# =============================================================================
# FIXTURES: Database
# =============================================================================

@pytest.fixture
def engine():
    """Fresh in-memory SQLite database per test."""
    eng = get_engine("sqlite://", echo=False)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def fresh_settings():
    """Drop cached settings so env/config changes made by a test take effect."""
    config._settings = None
    yield
    config._settings = None


# =============================================================================
# FIXTURES: Sample Reports
# =============================================================================

SAMPLE_XML = """<?xml version="1.0" encoding="utf-8"?>
<testsuites name="all" tests="5" failures="1" errors="1" skipped="1" time="4.5">
  <properties>
    <property name="ci" value="gitlab"/>
  </properties>
  <testsuite name="tests.test_math" timestamp="2024-01-15T10:00:00" tests="3" failures="1" errors="0" skipped="0" time="3.5" hostname="runner-1">
    <testcase classname="tests.test_math" name="test_add" time="1.0"/>
    <testcase classname="tests.test_math" name="test_sub" time="2.0"/>
    <testcase classname="tests.test_math" name="test_divide" time="0.5">
      <failure message="assert 2.0 == 3" type="AssertionError">def test_divide():
&gt;       assert divide(4, 2) == 3
E       assert 2.0 == 3

tests/test_math.py:12: AssertionError</failure>
    </testcase>
  </testsuite>
  <testsuite name="tests.test_db" timestamp="2024-01-15T10:00:05" tests="2" failures="0" errors="1" skipped="1" time="1.0">
    <testcase classname="tests.test_db" name="test_connect" time="0.8">
      <error message="Connection refused" type="ConnectionError">ConnectionError: Connection refused to localhost:5432</error>
    </testcase>
    <testcase classname="tests.test_db" name="test_migrate" time="0.2">
      <skipped message="no migrations"/>
    </testcase>
  </testsuite>
</testsuites>"""

RUNNER_SUITE_XML = """<?xml version="1.0" encoding="utf-8"?>
<testsuite name="pytest" timestamp="2024-01-15T11:00:00" tests="3" failures="0" errors="0" skipped="0" time="0.3">
  <testcase classname="tests.test_api" name="test_get" time="0.1"/>
  <testcase classname="tests.test_db" name="test_query" time="0.1"/>
  <testcase classname="tests.test_api" name="test_post" time="0.1"/>
</testsuite>"""


@pytest.fixture
def sample_xml() -> str:
    """Two suites: 2 passed, 1 failed, 1 error, 1 skipped."""
    return SAMPLE_XML


@pytest.fixture
def runner_suite_xml() -> str:
    """Bare <testsuite> named after the runner."""
    return RUNNER_SUITE_XML


# =============================================================================
# HELPERS
# =============================================================================

def _single_case_xml(status: str, index: int, name: str = "test_flaky",
                     classname: str = "tests.test_net") -> str:
    """One-case report; index varies the content so uploads never dedup."""
    body = {
        "passed": "",
        "failed": '<failure message="assert False">E       assert False</failure>',
        "error": '<error message="boom">RuntimeError: boom</error>',
        "skipped": '<skipped message="skip"/>',
    }[status]
    return (
        f'<testsuite name="{classname}" timestamp="2024-01-{index + 1:02d}T08:00:00" tests="1">'
        f'<testcase classname="{classname}" name="{name}" time="0.1">{body}</testcase>'
        f"</testsuite>"
    )


@pytest.fixture
def make_case_xml():
    return _single_case_xml
