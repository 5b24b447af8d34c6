"""Stack trace and error message normalization.

Strips volatile tokens (timestamps, ids, addresses, paths) so that two
failures differing only in such values produce identical text. Both
functions are pure and idempotent.
"""

import re

# (pattern, replacement), applied in order
TRACE_RULES: list[tuple[re.Pattern, str]] = [
    # ISO-8601 timestamps, epochs, durations
    (re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(\.\d+)?([+-]\d{2}:\d{2}|Z)?"),
     "<TIMESTAMP>"),
    (re.compile(r"\b\d{10,13}\b"), "<TIMESTAMP>"),
    (re.compile(r"\b\d+(\.\d+)?\s*(ms|s|sec|seconds?|minutes?)\b", re.IGNORECASE),
     "<DURATION>"),
    (re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b",
                re.IGNORECASE),
     "<UUID>"),
    (re.compile(r"\b0x[0-9a-f]+\b", re.IGNORECASE), "<HEX>"),
    (re.compile(r"\b[0-9a-f]{24}\b"), "<OBJID>"),
    # Not directly after a word character or a placeholder such as <PORT>
    (re.compile(r"(?<![\w>])id[=:]\s*\d+", re.IGNORECASE), "id=<ID>"),
    (re.compile(r"(?<![\w>])(user|account|session|request|entity)_\d+\b", re.IGNORECASE),
     r"\1_<ID>"),
    # Ports; a digit group closing a frame like (Foo.java:42) is a line number
    (re.compile(r":(\d{2,5})(?![\d)])"), ":<PORT>"),
    # Absolute paths only; relative paths like tests/test_x.py stay intact
    (re.compile(r"(?<![\w.])([a-zA-Z]:)?[/\\](?:[^\s/\\:]+[/\\])*([^/\\:\s]+\.[a-zA-Z]+)"), r"\2"),
    (re.compile(r"\bthread-\d+\b", re.IGNORECASE), "thread-<ID>"),
    (re.compile(
        r"\bexpected:?\s+(\"[^\"]*\"|'[^']*'|\S+)\s+but\s+(?:got|was)\s+(\"[^\"]*\"|'[^']*'|\S+)",
        re.IGNORECASE),
     "expected <VALUE> but got <VALUE>"),
]

MESSAGE_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\b\d+(\.\d+)?\b"), "<NUM>"),
    (re.compile(r'"[^"]*"'), '"<STR>"'),
    (re.compile(r"'[^']*'"), "'<STR>'"),
]


def _apply(rules: list[tuple[re.Pattern, str]], text: str) -> str:
    for pattern, replacement in rules:
        text = pattern.sub(replacement, text)
    return text


def normalize_stack_trace(stack_trace: str | None) -> str:
    if not stack_trace:
        return ""
    return _apply(TRACE_RULES, stack_trace)


def normalize_error_message(message: str | None) -> str:
    """Trace normalization plus numbers and quoted strings.

    Exact values in a message are almost always incidental to whether two
    failures are the same.
    """
    if not message:
        return ""
    return _apply(MESSAGE_RULES, _apply(TRACE_RULES, message))


normalize = normalize_stack_trace
