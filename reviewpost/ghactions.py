"""Report diagnostics as GitHub Actions workflow commands and build links."""

from __future__ import annotations

import os
import sys
import threading
from urllib.parse import urlsplit, urlunsplit

from reviewpost.model import Comment, Diagnostic, ServiceError, Severity

MAX_LOGGING_ANNOTATIONS_PER_STEP = 10
DEFAULT_GITHUB_SERVER_URL = "https://github.com"

_TOO_MANY_MESSAGE = """reviewdog: Too many results (annotations) in diff.
You may miss some annotations due to GitHub limitation for annotation created by logging command.
Please check GitHub Actions log console to see all results.

Limitation:
- 10 warning annotations and 10 error annotations per step
- 50 annotations per job (sum of annotations from all the steps)
- 50 annotations per run (separate from the job annotations, these annotations aren't created by users)"""

_warn_lock = threading.Lock()
_warned = False


def is_in_github_actions() -> bool:
    """Tell whether the process runs inside GitHub Actions."""
    return bool(os.environ.get("GITHUB_ACTIONS"))


def _escape_data(text: str) -> str:
    return text.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")


def _escape_property(text: str) -> str:
    return _escape_data(text).replace(":", "%3A").replace(",", "%2C")


def _issue(command: str, message: str, file: str = "", line: int = 0, col: int = 0) -> None:
    props = []
    if file:
        props.append(f"file={_escape_property(file)}")
    if line:
        props.append(f"line={line}")
    if col:
        props.append(f"col={col}")
    head = f"::{command}"
    if props:
        head += " " + ",".join(props)
    print(f"{head}::{_escape_data(message)}", file=sys.stdout)


def report_as_github_actions_log(tool_name: str, default_level: str, diagnostic: Diagnostic) -> None:
    """Print a diagnostic as a logging command that creates an annotation."""
    message = (
        f"[{tool_name}] reported by reviewdog 🐶\n{diagnostic.message}"
        f"\n\nRaw Output:\n{diagnostic.original_output}"
    )
    rng = diagnostic.location.range
    where = {
        "file": diagnostic.location.path,
        "line": rng.start_line,
        "col": rng.start_column,
    }

    level = default_level
    if diagnostic.severity == Severity.ERROR:
        level = "error"
    elif diagnostic.severity in (Severity.INFO, Severity.WARNING):
        level = "warning"

    if level in ("warning", "info"):
        _issue("warning", message, **where)
    elif level in ("error", ""):
        _issue("error", message, **where)
    else:
        _issue("error", f"Unknown level: {level}")
        _issue("error", message, **where)


def warn_too_many_annotations_once() -> None:
    """Print the too-many-annotations warning, only the first time."""
    global _warned
    with _warn_lock:
        if _warned:
            return
        _warned = True
    _issue("error", _TOO_MANY_MESSAGE)


class ActionLogWriter:
    """Report comments through logging commands to create annotations."""

    def __init__(self, level: str = "") -> None:
        self.level = level
        self.report_num = 0

    def post(self, comment: Comment) -> None:
        self.report_num += 1
        if self.report_num == MAX_LOGGING_ANNOTATIONS_PER_STEP:
            warn_too_many_annotations_once()
        report_as_github_actions_log(comment.tool_name, self.level, comment.result.diagnostic)

    def flush(self) -> None:
        """Raise if more annotations were reported than GitHub shows."""
        if self.report_num > 9:
            raise ServiceError(
                f"ActionLogWriter: reported too many annotation (N={self.report_num})"
            )


def _github_server_url() -> str:
    configured = os.environ.get("GITHUB_SERVER_URL", "")
    source = configured or DEFAULT_GITHUB_SERVER_URL
    try:
        parts = urlsplit(source)
        parts.port  # validates the port part
    except ValueError as exc:
        origin = "GITHUB_SERVER_URL" if configured else "the default"
        raise ServiceError(f"GitHub server URL from {origin} is invalid: {source}, {exc}") from exc
    return urlunsplit(parts)


def path_link(owner: str, repo: str, sha: str, path: str, line: int) -> str:
    """Build a link to a file at a commit, with an optional line anchor."""
    server_url = _github_server_url()
    sha = sha or "master"
    fragment = f"#L{line}" if line > 0 else ""
    return f"{server_url}/{owner}/{repo}/blob/{sha}/{path}{fragment}"


def basic_location_format(diagnostic: Diagnostic) -> str:
    """Format a location as ``path|line col column|``."""
    rng = diagnostic.location.range
    out = diagnostic.location.path + "|"
    if rng.start_line:
        out += str(rng.start_line)
        if rng.start_column:
            out += f" col {rng.start_column}"
    return out + "|"


def linked_markdown_diagnostic(owner: str, repo: str, sha: str, diagnostic: Diagnostic) -> str:
    """Return Markdown linking to the diagnostic's location, then its message."""
    path = diagnostic.location.path
    message = diagnostic.message
    if not path:
        return message
    loc = basic_location_format(diagnostic)
    try:
        link = path_link(owner, repo, sha, path, diagnostic.location.range.start_line)
    except ServiceError:
        return f"{loc} {message}"
    return f"[{loc}]({link}) {message}"