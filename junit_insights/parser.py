"""JUnit XML parser.

Handles both <testsuites><testsuite>... and bare <testsuite> roots. The root
shape is resolved once into a tagged union; callers only ever see a flat
list of SuiteElement.
"""

import logging
import xml.etree.ElementTree as ET
from typing import Optional

from pydantic import TypeAdapter

from .errors import MalformedInputError, ParseError
from .schemas import (
    CaseElement,
    CaseOutcome,
    ParsedReport,
    SuiteElement,
    SuiteReport,
    SuitesReport,
)

logger = logging.getLogger(__name__)

_report_adapter = TypeAdapter(ParsedReport)


def _float(value: Optional[str]) -> float:
    try:
        return float(value) if value not in (None, "") else 0.0
    except ValueError:
        return 0.0


def _int(value: Optional[str]) -> int:
    try:
        return int(float(value)) if value not in (None, "") else 0
    except ValueError:
        return 0


def _text(element: Optional[ET.Element]) -> str:
    if element is None:
        return ""
    return "".join(element.itertext()).strip()


def parse_xml(xml_content: str | bytes) -> ET.Element:
    """Parse raw XML into an element tree root."""
    try:
        return ET.fromstring(xml_content)
    except ET.ParseError as e:
        raise ParseError(f"Invalid XML: {e}") from e


def extract_properties(element: ET.Element) -> dict[str, str]:
    """<properties><property name="k" value="v"/></properties> → {k: v}."""
    properties = {}
    for prop in element.findall("properties/property"):
        name = prop.get("name")
        if name:
            properties[name] = prop.get("value", "")
    return properties


def _parse_outcome(case_el: ET.Element) -> Optional[CaseOutcome]:
    # Priority: failure > error > skipped
    for kind in ("failure", "error", "skipped"):
        child = case_el.find(kind)
        if child is not None:
            return CaseOutcome(
                kind=kind,
                message=child.get("message", "") or "",
                type=child.get("type", "") or "",
                text=_text(child),
            )
    return None


def _parse_case(case_el: ET.Element) -> CaseElement:
    return CaseElement(
        name=case_el.get("name") or "Unnamed Test",
        classname=case_el.get("classname", "") or "",
        time=_float(case_el.get("time")),
        assertions=_int(case_el.get("assertions")),
        file=case_el.get("file", "") or "",
        line=_int(case_el.get("line")),
        system_out=_text(case_el.find("system-out")),
        system_err=_text(case_el.find("system-err")),
        outcome=_parse_outcome(case_el),
    )


def _parse_suite(suite_el: ET.Element) -> SuiteElement:
    return SuiteElement(
        name=(suite_el.get("name") or "").strip(),
        timestamp=suite_el.get("timestamp"),
        time=_float(suite_el.get("time")),
        tests=_int(suite_el.get("tests")),
        failures=_int(suite_el.get("failures")),
        errors=_int(suite_el.get("errors")),
        skipped=_int(suite_el.get("skipped")),
        hostname=suite_el.get("hostname", "") or "",
        properties=extract_properties(suite_el),
        cases=[_parse_case(tc) for tc in suite_el.findall("testcase")],
    )


def _flatten_suites(suite_el: ET.Element) -> list[ET.Element]:
    """A <testsuite> wrapping further <testsuite>s yields its children.

    The wrapper itself is kept only when it also holds test cases directly.
    """
    nested = suite_el.findall("testsuite")
    if not nested:
        return [suite_el]
    flat = [suite_el] if suite_el.find("testcase") is not None else []
    for child in nested:
        flat.extend(_flatten_suites(child))
    return flat


def resolve_report(root: ET.Element) -> SuitesReport | SuiteReport:
    """Resolve the root element shape into a ParsedReport."""
    if root.tag == "testsuites":
        elements = []
        for suite_el in root.findall("testsuite"):
            elements.extend(_flatten_suites(suite_el))
        suites = [_parse_suite(el) for el in elements]
        return _report_adapter.validate_python({
            "kind": "suites",
            "suites": suites,
            "properties": extract_properties(root),
        })
    if root.tag == "testsuite":
        elements = _flatten_suites(root)
        if len(elements) > 1:
            logger.debug(f"Flattened <testsuite> root into {len(elements)} suites")
        if len(elements) == 1:
            return _report_adapter.validate_python({
                "kind": "suite",
                "suite": _parse_suite(elements[0]),
            })
        # A bare root that only wraps other suites behaves like <testsuites>
        return _report_adapter.validate_python({
            "kind": "suites",
            "suites": [_parse_suite(el) for el in elements],
            "properties": extract_properties(root),
        })
    raise MalformedInputError(
        f"Invalid JUnit XML format: root element <{root.tag}> is neither "
        f"<testsuites> nor <testsuite>"
    )


def parse_report(xml_content: str | bytes) -> SuitesReport | SuiteReport:
    """Parse JUnit XML content into a ParsedReport."""
    return resolve_report(parse_xml(xml_content))
