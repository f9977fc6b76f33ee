"""Deterministic failure classification from exit codes and captured output."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

from chadgi.orchestrator.models import ErrorKind

TIMEOUT_EXIT_CODE = 124

_GIT_PATTERN = re.compile(
    r"fatal: |error: cannot|git.*failed|merge conflict|not a git repository",
    re.IGNORECASE,
)
_API_PATTERN = re.compile(
    r"gh: |API rate limit|rate limit exceeded|403 Forbidden|404 Not Found|could not find"
    r"|authentication required|GraphQL",
    re.IGNORECASE,
)
_BUILD_PATTERN = re.compile(
    r"FAILED|FAIL\b|Error:|error\[|npm ERR!|test.*failed|build.*failed"
    r"|compilation error|syntax error",
    re.IGNORECASE,
)


@dataclass(slots=True, frozen=True)
class ClassificationRule:
    """Predicate over (exit_code, output) that maps to an error kind."""

    name: str
    kind: ErrorKind
    matches: Callable[[int | None, str], bool]


def _exit_code_is(code: int) -> Callable[[int | None, str], bool]:
    return lambda exit_code, _output: exit_code == code


def _output_matches(pattern: re.Pattern[str]) -> Callable[[int | None, str], bool]:
    return lambda _exit_code, output: pattern.search(output) is not None


# Evaluated top-down, first match wins.
CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        "timeout_exit_code",
        ErrorKind.TIMEOUT_FAILURE,
        _exit_code_is(TIMEOUT_EXIT_CODE),
    ),
    ClassificationRule("git_output", ErrorKind.GIT_ERROR, _output_matches(_GIT_PATTERN)),
    ClassificationRule("api_output", ErrorKind.API_ERROR, _output_matches(_API_PATTERN)),
    ClassificationRule("build_output", ErrorKind.BUILD_FAILURE, _output_matches(_BUILD_PATTERN)),
)


@dataclass(slots=True)
class ErrorClassification:
    kind: ErrorKind
    matched_rule: str


def classify_error(
    exit_code: int | None,
    captured_output: str,
    *,
    rules: tuple[ClassificationRule, ...] = CLASSIFICATION_RULES,
) -> ErrorKind:
    """Classify failure into the error taxonomy; ``execution_error`` when nothing matches."""

    return explain_error(exit_code, captured_output, rules=rules).kind


def explain_error(
    exit_code: int | None,
    captured_output: str,
    *,
    rules: tuple[ClassificationRule, ...] = CLASSIFICATION_RULES,
) -> ErrorClassification:
    output = captured_output or ""
    for rule in rules:
        if rule.matches(exit_code, output):
            return ErrorClassification(kind=rule.kind, matched_rule=rule.name)
    return ErrorClassification(kind=ErrorKind.EXECUTION_ERROR, matched_rule="fallback")
