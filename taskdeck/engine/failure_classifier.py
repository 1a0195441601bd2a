"""Deterministic classification of agent process failures.

Maps what an external CLI reported on its error channels (exit code,
stderr, the text of an error or result event) onto the closed
``ErrorKind`` set. Tool output on stdout is never classified. Pattern
groups are checked in order; the first hit wins. Status codes only
count next to an HTTP/status word, so "1429 lines" is not a rate limit.
"""
from __future__ import annotations

import re
import signal
from dataclasses import dataclass

from .models import ErrorKind

_STATUS = r"\b(?:http|status|status code|error|code)[\s:=#]*"

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    r"\brate[ _-]?limit",
    r"\bratelimit",
    r"\btoo many requests\b",
    _STATUS + r"429\b",
    r"\bquota (?:exceeded|exhausted)\b",
    r"\bexceeded (?:your )?(?:current )?quota\b",
    r"\bresource_exhausted\b",
    r"\busage limit\b",
    r"\boverloaded\b",
    _STATUS + r"529\b",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    r"\bunauthorized\b",
    _STATUS + r"401\b",
    r"\binvalid (?:x-)?api[ -]key\b",
    r"\bapi key not found\b",
    r"\bmissing api key\b",
    r"\bnot logged in\b",
    r"\bplease log ?in\b",
    r"\blogin required\b",
    r"\bauthentication (?:failed|error|required)\b",
    r"\btoken (?:has )?expired\b",
    r"\boauth token\b",
    r"\b(?:invalid|missing|expired) credentials\b",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    r"\btimed out\b",
    r"\b(?:request|connection|operation) timeout\b",
    r"\btimeout (?:exceeded|error|expired)\b",
    r"\bdeadline exceeded\b",
    r"\bmax(?:imum)? (?:number of )?turns\b",
)
_PERMISSION_PATTERNS: tuple[str, ...] = (
    r"\bpermission denied\b",
    r"\bpermissions? to use\b",
    r"\bhaven't granted\b",
    r"\bnot allowed\b",
    r"\bnot permitted\b",
    r"\b(?:call|tool|command|request|edit|write) (?:was )?rejected\b",
    r"\brejected by (?:the )?user\b",
    r"\buser denied\b",
    r"\brequires approval\b",
    r"\bprevents you from using\b",
)


def _compile(patterns: tuple[str, ...]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p) for p in patterns)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: ErrorKind
    matched_rule: str
    matched_pattern: str | None = None

    def describe(self) -> str:
        if self.matched_pattern:
            return f"{self.kind.value} ({self.matched_rule}: {self.matched_pattern!r})"
        return f"{self.kind.value} ({self.matched_rule})"


_PATTERN_RULES: tuple[tuple[str, ErrorKind, tuple[re.Pattern[str], ...]], ...] = (
    ("rate_limit", ErrorKind.RATE_LIMITED, _compile(_RATE_LIMIT_PATTERNS)),
    ("auth", ErrorKind.AUTH_EXPIRED, _compile(_AUTH_PATTERNS)),
    ("timeout", ErrorKind.TIMEOUT, _compile(_TIMEOUT_PATTERNS)),
    ("permission", ErrorKind.TOOL_PERMISSION_DENIED, _compile(_PERMISSION_PATTERNS)),
)
_PERMISSION_RES = _PATTERN_RULES[-1][2]


def classify_failure(
    *,
    exit_code: int | None,
    stderr: str = "",
    detail: str = "",
) -> FailureClassification:
    """Classify a failed agent run into an ``ErrorKind``.

    *detail* is the text of the provider's own error or result event;
    raw stdout (tool payloads) must not be passed here.
    """
    classification = classify_text(f"{stderr}\n{detail}")
    if classification is not None:
        return classification

    if exit_code is not None and (exit_code < 0 or exit_code >= 128):
        return FailureClassification(
            kind=ErrorKind.PROCESS_CRASHED,
            matched_rule="signal_exit",
            matched_pattern=_signal_name(exit_code),
        )
    if exit_code is not None and exit_code != 0:
        return FailureClassification(
            kind=ErrorKind.PROCESS_CRASHED,
            matched_rule="nonzero_exit",
            matched_pattern=str(exit_code),
        )
    return FailureClassification(kind=ErrorKind.UNKNOWN, matched_rule="fallback")


def classify_text(text: str) -> FailureClassification | None:
    """Match free-form error text against the pattern groups only."""
    haystack = text.lower()
    for rule, kind, patterns in _PATTERN_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                kind=kind, matched_rule=rule, matched_pattern=pattern,
            )
    return None


def is_permission_denial(text: str) -> bool:
    """True when a tool result reads like a refused permission."""
    return _first_match(text.lower(), _PERMISSION_RES) is not None


def _signal_name(exit_code: int) -> str:
    signum = -exit_code if exit_code < 0 else exit_code - 128
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(exit_code)


def _first_match(haystack: str, patterns: tuple[re.Pattern[str], ...]) -> str | None:
    for pattern in patterns:
        match = pattern.search(haystack)
        if match is not None:
            return match.group(0)
    return None
