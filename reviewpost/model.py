"""Diagnostics, review comments and helpers shared by the services."""

from __future__ import annotations

import enum
import os
import re
from dataclasses import dataclass, field

BODY_PREFIX = "<sub>reported by reviewdog :dog:</sub><br>"


class ServiceError(Exception):
    """Raised when a review service cannot complete its work."""


class Severity(enum.IntEnum):
    """Severity of a diagnostic."""

    UNKNOWN_SEVERITY = 0
    ERROR = 1
    WARNING = 2
    INFO = 3


@dataclass
class Position:
    line: int = 0
    column: int = 0


@dataclass
class Range:
    start: Position | None = None
    end: Position | None = None

    @property
    def start_line(self) -> int:
        return self.start.line if self.start else 0

    @property
    def start_column(self) -> int:
        return self.start.column if self.start else 0

    @property
    def end_line(self) -> int:
        return self.end.line if self.end else 0

    @property
    def end_column(self) -> int:
        return self.end.column if self.end else 0


@dataclass
class Location:
    path: str = ""
    range: Range = field(default_factory=Range)


@dataclass
class Code:
    value: str = ""
    url: str = ""


@dataclass
class Source:
    name: str = ""
    url: str = ""


@dataclass
class Suggestion:
    range: Range | None = None
    text: str = ""


@dataclass
class RelatedLocation:
    message: str = ""
    location: Location = field(default_factory=Location)


@dataclass
class Diagnostic:
    message: str = ""
    location: Location = field(default_factory=Location)
    severity: Severity = Severity.UNKNOWN_SEVERITY
    source: Source = field(default_factory=Source)
    code: Code = field(default_factory=Code)
    suggestions: list[Suggestion] = field(default_factory=list)
    original_output: str = ""
    related_locations: list[RelatedLocation] = field(default_factory=list)


@dataclass
class FilteredDiagnostic:
    """A diagnostic together with what the diff filter found out about it."""

    diagnostic: Diagnostic = field(default_factory=Diagnostic)
    should_report: bool = False
    in_diff_file: bool = False
    in_diff_context: bool = False
    first_suggestion_in_diff_context: bool = False
    source_lines: dict[int, str] = field(default_factory=dict)
    old_path: str = ""
    old_line: int = 0


@dataclass
class Comment:
    result: FilteredDiagnostic = field(default_factory=FilteredDiagnostic)
    tool_name: str = ""


class PostedComments:
    """Bodies of comments already posted, keyed by path and line."""

    def __init__(self) -> None:
        self._bodies: dict[str, dict[int, set[str]]] = {}

    def add(self, path: str, line: int, body: str) -> None:
        self._bodies.setdefault(path, {}).setdefault(line, set()).add(body)

    def is_posted(self, comment: Comment, line: int, body: str) -> bool:
        path = comment.result.diagnostic.location.path
        return body in self._bodies.get(path, {}).get(line, ())

    def __len__(self) -> int:
        return sum(
            len(bodies) for lines in self._bodies.values() for bodies in lines.values()
        )


def markdown_comment(comment: Comment) -> str:
    """Return the Markdown body of a review comment."""
    return BODY_PREFIX + comment.result.diagnostic.message


def code_fence_length(text: str) -> int:
    """Return the number of backticks needed to fence ``text``."""
    longest = max((len(m.group()) for m in re.finditer(r"`+", text)), default=0)
    return max(3, longest + 1)


def code_fence(length: int) -> str:
    return "`" * length


def join_workdir(workdir: str, path: str) -> str:
    """Join a repository-relative workdir and a path, with forward slashes."""
    parts = [part for part in (workdir, path) if part]
    if not parts:
        return ""
    joined = os.path.normpath(os.sep.join(parts))
    return joined.replace(os.sep, "/")