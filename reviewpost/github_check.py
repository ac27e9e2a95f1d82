"""Report results through the GitHub Checks API."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from reviewpost.ghactions import ActionLogWriter, is_in_github_actions, linked_markdown_diagnostic
from reviewpost.github_api import GitHubAPIError, GitHubClient
from reviewpost.model import Comment, FilteredDiagnostic, ServiceError, Severity, join_workdir
from reviewpost.serviceutil import git_rel_workdir

# The Checks API rejects summaries longer than this many characters.
MAX_ALLOWED_SIZE = 65535
# The Checks API accepts at most this many annotations per request.
MAX_ANNOTATIONS_PER_REQUEST = 50

_DEFAULT_NAME = "reviewdog"
_CUTOFF_MESSAGE = "... (Too many findings. Dropped some findings)"
_DETAILS_CLOSE = "</details>"
_PRECEDENCE = {"success": 0, "notice": 1, "warning": 2, "failure": 3}


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


@dataclass
class CheckResult:
    """The outcome of a check run."""

    report_url: str = ""
    conclusion: str = ""


class Check:
    """A comment service that reports results as a GitHub check run."""

    def __init__(
        self,
        client: GitHubClient | None,
        owner: str,
        repo: str,
        pr: int = 0,
        sha: str = "",
        level: str = "",
        tool_name: str = "",
        workdir: str | None = None,
    ) -> None:
        self.client = client
        self.owner = owner
        self.repo = repo
        self.pr = pr
        self.sha = sha
        self.level = level
        self.tool_name = tool_name
        self._workdir = git_rel_workdir() if workdir is None else workdir
        self._comments_lock = threading.Lock()
        self._result_lock = threading.Lock()
        self._post_comments: list[Comment] = []
        self._result: CheckResult | None = None

    @property
    def result(self) -> CheckResult | None:
        """The result of the last check run, if any."""
        with self._result_lock:
            return self._result

    def post(self, comment: Comment) -> None:
        location = comment.result.diagnostic.location
        location.path = join_workdir(self._workdir, location.path)
        with self._comments_lock:
            self._post_comments.append(comment)

    def post_filtered(self, comment: Comment) -> None:
        with self._comments_lock:
            self._post_comments.append(comment)

    def set_tool(self, tool_name: str, level: str) -> None:
        self.tool_name = tool_name
        self.level = level

    def flush(self) -> None:
        """Create the check run and post every held comment to it."""
        with self._comments_lock:
            try:
                self._flush_locked()
            finally:
                self._post_comments = []

    def _flush_locked(self) -> None:
        try:
            check = self._create_check()
        except GitHubAPIError as exc:
            # A forbidden response inside GitHub Actions means the token is
            # read-only (e.g. a pull request from a fork); log instead.
            if exc.status_code == 403 and is_in_github_actions():
                writer = ActionLogWriter(self.level)
                for comment in self._post_comments:
                    if comment.result.should_report:
                        writer.post(comment)
                writer.flush()
                return
            raise ServiceError(f"failed to create check: {exc}") from exc

        try:
            check_run, conclusion = self._post_check(check.get("id", 0))
        except ServiceError as exc:
            raise ServiceError(f"failed to post result: {exc}") from exc
        with self._result_lock:
            self._result = CheckResult(
                report_url=check_run.get("html_url") or "",
                conclusion=conclusion,
            )

    def _create_check(self) -> dict:
        payload = {"name": self._check_name(), "head_sha": self.sha, "status": "in_progress"}
        return self.client.create_check_run(self.owner, self.repo, payload)

    def _post_check(self, check_id: int) -> tuple[dict, str]:
        annotations = [
            self.to_annotation(c.result) for c in self._post_comments if c.result.should_report
        ]
        if annotations:
            try:
                self._post_annotations(check_id, annotations)
            except ServiceError as exc:
                raise ServiceError(f"failed to post annotations: {exc}") from exc

        conclusion = self.conclusion(annotations)
        completed_at = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        payload = {
            "name": self._check_name(),
            "status": "completed",
            "conclusion": conclusion,
            "completed_at": completed_at,
            "output": {
                "title": self._check_title(),
                "summary": self.summary(self._post_comments),
            },
        }
        check_run = self.client.update_check_run(self.owner, self.repo, check_id, payload)
        return check_run, conclusion

    def _post_annotations(self, check_id: int, annotations: list[dict]) -> None:
        for start in range(0, len(annotations), MAX_ANNOTATIONS_PER_REQUEST):
            payload = {
                "name": self._check_name(),
                "output": {
                    "title": self._check_title(),
                    "summary": "",  # the summary goes with the last request
                    "annotations": annotations[start:start + MAX_ANNOTATIONS_PER_REQUEST],
                },
            }
            self.client.update_check_run(self.owner, self.repo, check_id, payload)

    def to_annotation(self, result: FilteredDiagnostic) -> dict[str, Any]:
        """Build a check-run annotation for a filtered diagnostic."""
        diagnostic = result.diagnostic
        rng = diagnostic.location.range
        start_line = rng.start_line
        end_line = rng.end_line or start_line
        annotation: dict[str, Any] = {
            "path": diagnostic.location.path,
            "start_line": start_line,
            "end_line": end_line,
            "annotation_level": self.annotation_level(diagnostic.severity),
            "message": diagnostic.message,
            "title": self.build_title(result),
        }
        # Columns are only accepted when the annotation is on a single line.
        if start_line == end_line and rng.start_column and rng.end_column:
            annotation["start_column"] = rng.start_column
            annotation["end_column"] = rng.end_column
        if diagnostic.original_output:
            annotation["raw_details"] = diagnostic.original_output
        return annotation

    def build_title(self, result: FilteredDiagnostic) -> str:
        diagnostic = result.diagnostic
        parts = []
        tool_name = diagnostic.source.name or self.tool_name
        if tool_name:
            parts.append(f"[{tool_name}] ")
        location = diagnostic.location
        parts.append(location.path)
        start_line = location.range.start_line
        if start_line > 0:
            parts.append(f"#L{start_line}")
            end_line = location.range.end_line
            if start_line < end_line:
                parts.append(f"-L{end_line}")
        code = diagnostic.code
        if code.value:
            parts.append(f" <{code.value}>({code.url})" if code.url else f" <{code.value}>")
        return "".join(parts)

    def conclusion(self, annotations: list[dict]) -> str:
        """Return the check-run conclusion for the posted annotations."""
        if self.level:
            # The configured level wins when present.
            if not annotations:
                return "success"
            if self.level.lower() in ("info", "warning"):
                return "neutral"
            return "failure"

        highest = "success"
        for annotation in annotations:
            level = annotation.get("annotation_level", "")
            if _PRECEDENCE.get(level, 0) > _PRECEDENCE[highest]:
                highest = level
        if highest == "success":
            return "success"
        if highest in ("notice", "warning"):
            return "neutral"
        return "failure"

    def annotation_level(self, severity: Severity) -> str:
        if severity == Severity.ERROR:
            return "failure"
        if severity == Severity.WARNING:
            return "warning"
        if severity == Severity.INFO:
            return "notice"
        return self._requested_annotation_level()

    def _requested_annotation_level(self) -> str:
        return {"info": "notice", "warning": "warning"}.get(self.level.lower(), "failure")

    def _check_name(self) -> str:
        return self.tool_name or _DEFAULT_NAME

    def _check_title(self) -> str:
        name = self._check_name()
        if name != _DEFAULT_NAME:
            return f"reviewdog [{name}] report"
        return "reviewdog report"

    def summary(self, comments: list[Comment]) -> str:
        """Return the check-run summary, kept under the API size limit."""
        header = "reported by [reviewdog](https://github.com/reviewdog/reviewdog) :dog:"
        lines = [header]
        used = _byte_len(header) + 1
        findings = [c.result for c in comments if c.result.should_report]
        filtered = [c.result for c in comments if not c.result.should_report]

        finding_lines, used = self._summary_findings("Findings", used, findings)
        lines.extend(finding_lines)
        filtered_lines, _ = self._summary_findings("Filtered Findings", used, filtered)
        lines.extend(filtered_lines)
        return "\n".join(lines)

    def _summary_findings(
        self, name: str, used: int, results: list[FilteredDiagnostic]
    ) -> tuple[list[str], int]:
        opening = f"<details>\n<summary>{name} ({len(results)})</summary>\n"
        if _byte_len(opening) + 1 + used > MAX_ALLOWED_SIZE:
            return [], used
        lines = [opening]
        used += _byte_len(opening) + 1
        closing = _byte_len(_DETAILS_CLOSE)
        for result in results:
            next_line = linked_markdown_diagnostic(self.owner, self.repo, self.sha, result.diagnostic)
            if used + _byte_len(next_line) + 1 + closing >= MAX_ALLOWED_SIZE:
                if used + _byte_len(_CUTOFF_MESSAGE) + 1 + closing <= MAX_ALLOWED_SIZE:
                    lines.append(_CUTOFF_MESSAGE)
                    used += _byte_len(_CUTOFF_MESSAGE) + 1
                break
            lines.append(next_line)
            used += _byte_len(next_line) + 1
        lines.append(_DETAILS_CLOSE)
        used += closing + 1
        return lines, used