"""Failure fingerprinting and classification.

Every heuristic here is an ordered list of (name, rule) pairs evaluated top to
bottom with early return. Rules return None when they do not apply. Nothing
in this module raises on messy input: extraction degrades to the
UnknownError / Unknown.unknown sentinels.
"""

import re
from dataclasses import dataclass
from typing import Callable, Optional

from .normalizer import normalize_error_message, normalize_stack_trace

UNKNOWN_EXCEPTION = "UnknownError"

ASSERTION_FAILURE = "Assertion Failure"
NULL_POINTER_ERROR = "Null Pointer Error"
TIMEOUT_ERROR = "Timeout Error"
CONNECTION_ERROR = "Connection Error"
SETUP_TEARDOWN_ERROR = "Setup/Teardown Error"
INVALID_STATE_ARGUMENT = "Invalid State/Argument"
OTHER_ERROR = "Other Error"

COMMON_EXCEPTIONS = [
    # Java
    "NullPointerException",
    "AssertionError",
    "IllegalArgumentException",
    "IllegalStateException",
    "IOException",
    "SQLException",
    "RuntimeException",
    "TimeoutException",
    "InterruptedException",
    "ConcurrentModificationException",
    # Python
    "AttributeError",
    "ImportError",
    "IndexError",
    "KeyError",
    "NameError",
    "TypeError",
    "ValueError",
    "RuntimeError",
    "TimeoutError",
    "ConnectionError",
    "OSError",
    "Exception",
]

_COMMON_EXCEPTION_PATTERNS = [
    (name, re.compile(rf"(?<!\w){name}\b")) for name in COMMON_EXCEPTIONS
]

# pytest marks exception lines with "E" followed by at least three spaces
_E_MARKER = re.compile(r"^E\s{3,}(.*)$")
_EXCEPTION_NAME = re.compile(r"(?:^|[\s(:])(?:[a-zA-Z_][\w]*\.)*([A-Z]\w*(?:Exception|Error))\b")
_FILE_LINE_EXCEPTION = re.compile(r"^\s*(.+?):(\d+):\s*(?:[a-zA-Z_][\w]*\.)*([A-Z]\w*(?:Error|Exception))")
_RAISE = re.compile(r"^\s*raise\s+(?:[a-zA-Z_][\w]*\.)*([A-Z]\w*)")

_PY_FILE_LINE = re.compile(r"^\s*([^\s:]+\.py):(\d+):")
_PY_DEF = re.compile(r"^\s*(?:async\s+)?def\s+(\w+)\s*\(")
_PY_FRAME = re.compile(r'File "([^"]+)", line (\d+), in ([\w<>]+)')
_JAVA_FRAME = re.compile(r"at\s+([a-zA-Z0-9_$.]+)\.([a-zA-Z0-9_$<>]+)\([^)]*\)")
_JS_FRAME = re.compile(r"at\s+(?:async\s+)?([\w$.<>]+)\s+\(([^()]+?):(\d+):(\d+)\)")


@dataclass(frozen=True)
class RootCause:
    class_name: str
    method_name: str

    @property
    def location(self) -> str:
        return f"{self.class_name}.{self.method_name}"


UNKNOWN_ROOT_CAUSE = RootCause("Unknown", "unknown")


def _lines(text: Optional[str]) -> list[str]:
    return text.splitlines() if text else []


def _stem(path: str) -> str:
    name = re.split(r"[/\\]", path)[-1]
    return name.rsplit(".", 1)[0] if "." in name else name


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


# ---------------------------------------------------------------------------
# Exception type
# ---------------------------------------------------------------------------

def _type_from_marker_lines(text: str) -> Optional[str]:
    for line in _lines(text):
        marker = _E_MARKER.match(line)
        if not marker:
            continue
        match = _EXCEPTION_NAME.search(" " + marker.group(1).strip())
        if match:
            return match.group(1)
    return None


def _type_from_file_line(text: str) -> Optional[str]:
    for line in _lines(text):
        if _E_MARKER.match(line):
            break
        match = _FILE_LINE_EXCEPTION.match(line)
        if match:
            return match.group(3)
    return None


def _type_from_common_names(text: str) -> Optional[str]:
    for name, pattern in _COMMON_EXCEPTION_PATTERNS:
        if pattern.search(text):
            return name
    return None


def _type_from_generic_pattern(text: str) -> Optional[str]:
    match = _EXCEPTION_NAME.search(text)
    return match.group(1) if match else None


def _type_from_raise(text: str) -> Optional[str]:
    for line in _lines(text):
        match = _RAISE.match(line)
        if match:
            return match.group(1)
    return None


EXCEPTION_TYPE_RULES: list[tuple[str, Callable[[str], Optional[str]]]] = [
    ("pytest_marker", _type_from_marker_lines),
    ("file_line", _type_from_file_line),
    ("common_names", _type_from_common_names),
    ("generic_pattern", _type_from_generic_pattern),
    ("raise_statement", _type_from_raise),
]


def extract_exception_type(stack_trace: Optional[str], error_message: Optional[str]) -> str:
    """Exception type from the trace, then the message, else UnknownError."""
    for text in (stack_trace, error_message):
        if not text:
            continue
        for _name, rule in EXCEPTION_TYPE_RULES:
            found = rule(text)
            if found:
                return found
    return UNKNOWN_EXCEPTION


# ---------------------------------------------------------------------------
# Root cause location
# ---------------------------------------------------------------------------

def _root_from_pytest(lines: list[str]) -> Optional[RootCause]:
    for index, line in enumerate(lines):
        match = _PY_FILE_LINE.match(line)
        if not match:
            continue
        for previous in reversed(lines[max(0, index - 10):index]):
            definition = _PY_DEF.match(previous)
            if definition:
                return RootCause(_stem(match.group(1)), definition.group(1))
        # No def nearby: fall through to the traceback frame rules
        return None
    return None


def _root_from_python_frames(lines: list[str]) -> Optional[RootCause]:
    frames = [m for m in (_PY_FRAME.search(line) for line in lines) if m]
    if not frames:
        return None
    # Most recent call last
    innermost = frames[-1]
    return RootCause(_stem(innermost.group(1)), innermost.group(3))


def _root_from_java(lines: list[str]) -> Optional[RootCause]:
    for line in lines:
        match = _JAVA_FRAME.search(line)
        if match:
            return RootCause(match.group(1).split(".")[-1], match.group(2))
    return None


def _root_from_javascript(lines: list[str]) -> Optional[RootCause]:
    for line in lines:
        match = _JS_FRAME.search(line)
        if not match:
            continue
        function = match.group(1)
        if "." in function:
            owner, method = function.rsplit(".", 1)
            return RootCause(owner.split(".")[-1], method)
        return RootCause(_stem(match.group(2)), function)
    return None


ROOT_CAUSE_RULES: list[tuple[str, Callable[[list[str]], Optional[RootCause]]]] = [
    ("pytest_file_line", _root_from_pytest),
    ("python_traceback", _root_from_python_frames),
    ("java_frame", _root_from_java),
    ("javascript_frame", _root_from_javascript),
]


def extract_root_cause(stack_trace: Optional[str]) -> RootCause:
    lines = _lines(stack_trace)
    if not lines:
        return UNKNOWN_ROOT_CAUSE
    for _name, rule in ROOT_CAUSE_RULES:
        found = rule(lines)
        if found:
            return found
    return UNKNOWN_ROOT_CAUSE


# ---------------------------------------------------------------------------
# Fingerprint
# ---------------------------------------------------------------------------

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def simple_hash(text: str) -> str:
    """32-bit rolling hash (h * 31 + ch), signed wrap, rendered in base36."""
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _to_base36(abs(h))


def failure_signature(stack_trace: Optional[str], error_message: Optional[str]) -> str:
    exception_type = extract_exception_type(stack_trace, error_message)
    root_cause = extract_root_cause(stack_trace)
    normalized_message = normalize_error_message(error_message)
    trace_head = "\n".join(normalize_stack_trace(stack_trace).split("\n")[:5])
    return f"{exception_type}::{root_cause.location}::{normalized_message}::{trace_head}"


def create_fingerprint(stack_trace: Optional[str], error_message: Optional[str]) -> str:
    return simple_hash(failure_signature(stack_trace, error_message))


def calculate_similarity(first: str, second: str) -> float:
    """Jaccard index over the character sets of two strings.

    Coarse, but constant-cost per pair compared to edit distance.
    """
    if first == second:
        return 1.0
    if not first or not second:
        return 0.0
    chars_a = set(first.lower())
    chars_b = set(second.lower())
    return len(chars_a & chars_b) / len(chars_a | chars_b)


# ---------------------------------------------------------------------------
# Category
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _FailureText:
    exception_type: str
    message: str
    trace: str


def _is_assertion(f: _FailureText) -> bool:
    return (
        f.exception_type == "AssertionError"
        or "expected" in f.message
        or "assert" in f.message
    )


def _is_null_pointer(f: _FailureText) -> bool:
    return (
        f.exception_type == "NullPointerException"
        or "null" in f.message
        or "'nonetype' object" in f.message
    )


def _is_timeout(f: _FailureText) -> bool:
    return (
        "timeout" in f.exception_type.lower()
        or "timeout" in f.message
        or "timed out" in f.message
        or "timeout" in f.trace
    )


def _is_connection(f: _FailureText) -> bool:
    return (
        f.exception_type == "IOException"
        or "connection" in f.exception_type.lower()
        or "connection" in f.message
        or "refused" in f.message
        or "network" in f.message
    )


def _is_setup_teardown(f: _FailureText) -> bool:
    return any(
        marker in f.trace for marker in ("@before", "@after", "setup", "teardown")
    )


def _is_invalid_state(f: _FailureText) -> bool:
    return f.exception_type in ("IllegalStateException", "IllegalArgumentException")


CATEGORY_RULES: list[tuple[str, Callable[[_FailureText], bool]]] = [
    (ASSERTION_FAILURE, _is_assertion),
    (NULL_POINTER_ERROR, _is_null_pointer),
    (TIMEOUT_ERROR, _is_timeout),
    (CONNECTION_ERROR, _is_connection),
    (SETUP_TEARDOWN_ERROR, _is_setup_teardown),
    (INVALID_STATE_ARGUMENT, _is_invalid_state),
]


def categorize_failure(
    exception_type: Optional[str],
    error_message: Optional[str],
    stack_trace: Optional[str],
) -> str:
    failure = _FailureText(
        exception_type=exception_type or UNKNOWN_EXCEPTION,
        message=(error_message or "").lower(),
        trace=(stack_trace or "").lower(),
    )
    for category, matches in CATEGORY_RULES:
        if matches(failure):
            return category
    return OTHER_ERROR


# ---------------------------------------------------------------------------
# Human-readable message
# ---------------------------------------------------------------------------

def _message_from_trace_head(lines: list[str]) -> Optional[str]:
    for line in lines:
        marker = _E_MARKER.match(line)
        if marker:
            content = marker.group(1).strip()
            if content and not content.startswith((">>>", "self =")):
                return content
        file_line = _FILE_LINE_EXCEPTION.match(line)
        if file_line:
            path, line_number, exception_type = file_line.groups()
            file_name = re.split(r"[/\\]", path.strip())[-1]
            return f"{exception_type} at {file_name}:{line_number}"
    return None


def _message_from_statement(lines: list[str]) -> Optional[str]:
    for line in lines:
        stripped = line.strip()
        if stripped.startswith(("raise ", "assert ")):
            return stripped
    return None


def _message_from_failed_line(lines: list[str]) -> Optional[str]:
    for line in lines:
        stripped = line.strip()
        if stripped.startswith("Failed:"):
            return stripped[len("Failed:"):].strip()
    return None


def _message_from_first_line(lines: list[str]) -> Optional[str]:
    for line in lines:
        stripped = line.strip()
        if stripped and not stripped.startswith(("at ", "File ", ">", "_")):
            return stripped
    return None


def extract_error_message(
    stack_trace: Optional[str],
    message_attribute: Optional[str] = None,
    max_length: int = 500,
) -> Optional[str]:
    """Best human-readable message for a failed or errored test.

    pytest often leaves the real assertion detail in the trace body rather
    than the message attribute, so the trace's marker lines win over it.
    """
    lines = _lines(stack_trace)
    rules: list[Callable[[], Optional[str]]] = [
        lambda: _message_from_trace_head(lines),
        lambda: (message_attribute or "").strip() or None,
        lambda: _message_from_statement(lines),
        lambda: _message_from_failed_line(lines),
        lambda: _message_from_first_line(lines),
    ]
    for rule in rules:
        found = rule()
        if found:
            return _truncate(found, max_length)
    return None
