"""Post results as review comments on a GitHub pull request."""

from __future__ import annotations

import base64
import logging
import os
import sys
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from reviewpost.ghactions import ActionLogWriter, is_in_github_actions
from reviewpost.github_api import GitHubAPIError, GitHubClient
from reviewpost.github_diff import PullRequestDiffService
from reviewpost.model import (
    Comment,
    Diagnostic,
    Location,
    PostedComments,
    Position,
    Range,
    ServiceError,
    Suggestion,
    code_fence,
    code_fence_length,
    join_workdir,
    markdown_comment,
)
from reviewpost.serviceutil import get_git_root, git_rel_workdir

_log = logging.getLogger(__name__)

MAX_COMMENTS_PER_REQUEST = 30
MAX_FILE_COMMENTS = 10

INVALID_SUGGESTION_PRE = "<details><summary>reviewdog suggestion error</summary>"
INVALID_SUGGESTION_POST = "</details>"

_META_PREFIX = "<!-- __reviewdog__:"
_META_SUFFIX = " -->"

_FALLBACK_MESSAGE = (
    "reviewdog: This GitHub Token doesn't have write permission of Review API,\n"
    "so reviewdog will report results via logging command and create annotations similar to\n"
    "github-pr-check reporter as a fallback."
)

_FNV_OFFSET = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3
_UINT64 = 0xFFFFFFFFFFFFFFFF


class _SuggestionError(ValueError):
    """A suggestion that cannot be shown as a GitHub suggestion block."""


# --- wire format -----------------------------------------------------------


def _varint(value: int) -> bytes:
    value &= _UINT64
    out = bytearray()
    while True:
        bits = value & 0x7F
        value >>= 7
        if value:
            out.append(bits | 0x80)
        else:
            out.append(bits)
            return bytes(out)


def _message_field(number: int, data: bytes) -> bytes:
    return _varint(number << 3 | 2) + _varint(len(data)) + data


def _bytes_field(number: int, data: bytes) -> bytes:
    return _message_field(number, data) if data else b""


def _string_field(number: int, text: str) -> bytes:
    return _bytes_field(number, text.encode("utf-8"))


def _int_field(number: int, value: int) -> bytes:
    return _varint(number << 3) + _varint(value) if value else b""


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 70:
            raise ValueError("varint too long")


def _iter_fields(data: bytes) -> Iterator[tuple[int, int, Any]]:
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        number, wire = key >> 3, key & 7
        if number == 0:
            raise ValueError("invalid field number 0")
        if wire == 0:
            value, pos = _read_varint(data, pos)
        elif wire == 2:
            length, pos = _read_varint(data, pos)
            value = data[pos:pos + length]
            pos += length
        elif wire in (1, 5):
            size = 8 if wire == 1 else 4
            value = data[pos:pos + size]
            pos += size
        else:
            raise ValueError(f"unsupported wire type {wire}")
        if pos > len(data):
            raise ValueError("truncated field")
        yield number, wire, value


@dataclass
class MetaComment:
    """Hidden data attached to each posted comment."""

    fingerprint: str = ""
    source_name: str = ""

    def to_bytes(self) -> bytes:
        return _string_field(1, self.fingerprint) + _string_field(2, self.source_name)

    @classmethod
    def from_bytes(cls, data: bytes) -> MetaComment:
        meta = cls()
        for number, wire, value in _iter_fields(data):
            if number not in (1, 2):
                continue
            if wire != 2:
                raise ValueError(f"field {number} has wrong wire type {wire}")
            text = bytes(value).decode("utf-8")
            if number == 1:
                meta.fingerprint = text
            else:
                meta.source_name = text
        return meta


def build_meta_comment(fprint: str, tool_name: str) -> str:
    """Encode a fingerprint and tool name as base64 meta data."""
    meta = MetaComment(fingerprint=fprint, source_name=tool_name)
    return base64.b64encode(meta.to_bytes()).decode("ascii")


def decode_meta_comment(text: str) -> MetaComment:
    """Decode base64 meta data; raise ValueError when it is malformed."""
    return MetaComment.from_bytes(base64.b64decode(text, validate=True))


def extract_meta_comment(body: str) -> MetaComment | None:
    """Return the meta data hidden in a comment body, if there is any."""
    for line in body.split("\n"):
        if not line.startswith(_META_PREFIX):
            continue
        after = line[len(_META_PREFIX):]
        if not after.endswith(_META_SUFFIX):
            continue
        try:
            return decode_meta_comment(after[: -len(_META_SUFFIX)])
        except ValueError as exc:
            _log.warning("failed to decode MetaComment: %s", exc)
    return None


def _position_bytes(position: Position | None) -> bytes:
    if position is None:
        return b""
    return _int_field(1, position.line) + _int_field(2, position.column)


def _range_bytes(rng: Range | None) -> bytes:
    if rng is None:
        return b""
    return _bytes_field(1, _position_bytes(rng.start)) + _bytes_field(2, _position_bytes(rng.end))


def _location_bytes(location: Location) -> bytes:
    return _string_field(1, location.path) + _bytes_field(2, _range_bytes(location.range))


def _diagnostic_bytes(diagnostic: Diagnostic) -> bytes:
    parts = [
        _string_field(1, diagnostic.message),
        _bytes_field(2, _location_bytes(diagnostic.location)),
        _int_field(3, int(diagnostic.severity)),
        _bytes_field(4, _string_field(1, diagnostic.source.name) + _string_field(2, diagnostic.source.url)),
        _bytes_field(5, _string_field(1, diagnostic.code.value) + _string_field(2, diagnostic.code.url)),
    ]
    parts.extend(
        _message_field(6, _bytes_field(1, _range_bytes(s.range)) + _string_field(2, s.text))
        for s in diagnostic.suggestions
    )
    parts.append(_string_field(7, diagnostic.original_output))
    parts.extend(
        _message_field(8, _string_field(1, r.message) + _bytes_field(2, _location_bytes(r.location)))
        for r in diagnostic.related_locations
    )
    return b"".join(parts)


def fingerprint(diagnostic: Diagnostic) -> str:
    """Return a stable FNV-1a 64-bit fingerprint of a diagnostic, in hex."""
    value = _FNV_OFFSET
    for byte in _diagnostic_bytes(diagnostic):
        value ^= byte
        value = (value * _FNV_PRIME) & _UINT64
    return format(value, "x")


# --- comment building ------------------------------------------------------


def comment_line_range(comment: Comment) -> tuple[int, int]:
    """Return the start and end line the review comment is attached to."""
    result = comment.result
    suggestions = result.diagnostic.suggestions
    if result.first_suggestion_in_diff_context and suggestions:
        rng = suggestions[0].range or Range()
    else:
        rng = result.diagnostic.location.range or Range()
    start = rng.start_line
    return start, rng.end_line or start


def comment_line(comment: Comment) -> int:
    """Return the line GitHub reports for the comment (1 for file comments)."""
    if not comment.result.in_diff_context:
        return 1
    return comment_line_range(comment)[1]


def _draft_review_comment(comment: Comment, body: str) -> dict[str, Any]:
    start, end = comment_line_range(comment)
    draft: dict[str, Any] = {
        "path": comment.result.diagnostic.location.path,
        "side": "RIGHT",
        "body": body,
        "line": end,
    }
    # GitHub requires the start line to precede the end line.
    if start < end:
        draft["start_side"] = "RIGHT"
        draft["start_line"] = start
    return draft


def _file_comment(comment: Comment, body: str, sha: str) -> dict[str, Any]:
    return {
        "path": comment.result.diagnostic.location.path,
        "side": "RIGHT",
        "body": body,
        "commit_id": sha,
        "subject_type": "file",
    }


def _fenced_suggestion(text: str, always_newline: bool) -> str:
    fence = code_fence(code_fence_length(text))
    inner = text + "\n" if (text or always_newline) else ""
    return f"{fence}suggestion\n{inner}{fence}"


def _source_line(source_lines: dict[int, str], line: int) -> str:
    try:
        return source_lines[line]
    except KeyError:
        raise _SuggestionError(
            f"source line (L={line}) is not available for this suggestion"
        ) from None


def _non_line_based_suggestion(comment: Comment, suggestion: Suggestion) -> str:
    source_lines = comment.result.source_lines
    if not source_lines:
        raise _SuggestionError("source lines are not available")
    rng = suggestion.range or Range()
    start_content = _source_line(source_lines, rng.start_line).encode("utf-8")
    end_content = _source_line(source_lines, rng.end_line).encode("utf-8")
    head = start_content[: max(rng.start_column - 1, 0)].decode("utf-8", errors="replace")
    tail = end_content[max(rng.end_column - 1, 0):].decode("utf-8", errors="replace")
    return _fenced_suggestion(head + suggestion.text + tail, always_newline=True)


def _single_suggestion(comment: Comment, suggestion: Suggestion) -> str:
    rng = suggestion.range or Range()
    start_line = rng.start_line
    end_line = rng.end_line or start_line
    g_start, g_end = comment_line_range(comment)
    if start_line != g_start or end_line != g_end:
        raise _SuggestionError(
            "GitHub comment range and suggestion line range must be same. "
            f"L{g_start}-L{g_end} v.s. L{start_line}-L{end_line}"
        )
    if rng.start_column > 0 or rng.end_column > 0:
        return _non_line_based_suggestion(comment, suggestion)
    return _fenced_suggestion(suggestion.text, always_newline=False)


def build_suggestions(comment: Comment) -> str:
    """Return the suggestion blocks for a comment, or errors in their place."""
    blocks = []
    for suggestion in comment.result.diagnostic.suggestions:
        try:
            blocks.append(_single_suggestion(comment, suggestion) + "\n")
        except _SuggestionError as exc:
            blocks.append(f"{INVALID_SUGGESTION_PRE}{exc}{INVALID_SUGGESTION_POST}\n")
    return "".join(blocks)


def _normalize_path(path: str, root: str) -> str:
    if os.path.isabs(path) and root:
        relative = os.path.relpath(path, root)
        if relative != ".." and not relative.startswith(".." + os.sep):
            path = relative
    return path.replace(os.sep, "/")


def code_snippet_url(base_url: str, git_root: str, location: Location) -> str:
    """Return a link to the lines of a location at the pull request head."""
    url = f"{base_url}/{_normalize_path(location.path, git_root)}"
    rng = location.range or Range()
    if rng.start_line > 0:
        url += f"#L{rng.start_line}"
    if rng.end_line > 0:
        url += f"-L{rng.end_line}"
    return url


def build_body(comment: Comment, base_url: str, git_root: str, fprint: str, tool_name: str) -> str:
    """Return the full Markdown body of a review comment, meta data included."""
    body = markdown_comment(comment)
    diagnostic = comment.result.diagnostic
    if comment.result.in_diff_context:
        suggestions = build_suggestions(comment)
        if suggestions:
            body += "\n" + suggestions
    elif diagnostic.location.range.start_line > 0:
        body += "\n\n" + code_snippet_url(base_url, git_root, diagnostic.location)
    for related in diagnostic.related_locations:
        location = related.location
        if not location.path or location.range.start_line == 0:
            continue
        url = code_snippet_url(base_url, git_root, location)
        body += f"\n<hr>\n\n{related.message}\n{url}"
    body += f"\n{_META_PREFIX}{build_meta_comment(fprint, tool_name)}{_META_SUFFIX}\n"
    return body


def _is_permission_error(exc: GitHubAPIError) -> bool:
    return exc.status_code in (403, 404)


# --- service ---------------------------------------------------------------


class PullRequest:
    """A comment and diff service for a GitHub pull request."""

    def __init__(
        self,
        client: GitHubClient | None,
        owner: str,
        repo: str,
        pr: int,
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
        self.tool_name = tool_name
        self._workdir = git_rel_workdir() if workdir is None else workdir
        self._log_writer = ActionLogWriter(level)
        self._fallback_to_log = False
        self._lock = threading.Lock()
        self._post_comments: list[Comment] = []
        self._posted = PostedComments()
        self._outdated: dict[str, dict] = {}
        self._replied: set[int] = set()

    def post(self, comment: Comment) -> None:
        """Hold a comment until flush."""
        location = comment.result.diagnostic.location
        location.path = join_workdir(self._workdir, location.path)
        with self._lock:
            self._post_comments.append(comment)

    def flush(self) -> None:
        """Post every held comment that was not posted before."""
        with self._lock:
            try:
                self._set_posted_comments()
                self._post_as_review_comment()
            finally:
                self._post_comments = []

    def set_tool(self, tool_name: str, level: str) -> None:
        self.tool_name = tool_name
        self._log_writer = ActionLogWriter(level)

    def diff(self) -> bytes:
        """Return the diff of the pull request."""
        service = PullRequestDiffService(
            client=self.client,
            owner=self.owner,
            repo=self.repo,
            pr=self.pr,
            sha=self.sha,
            fallback_to_git_cli=True,
        )
        return service.diff()

    def strip(self) -> int:
        return 1

    def _set_posted_comments(self) -> None:
        self._posted = PostedComments()
        self._outdated = {}
        self._replied = set()
        for existing in self.client.list_review_comments(self.owner, self.repo, self.pr):
            reply_to = existing.get("in_reply_to_id") or 0
            if reply_to:
                self._replied.add(reply_to)
            meta = extract_meta_comment(existing.get("body") or "")
            if meta is None:
                continue
            self._posted.add(existing.get("path") or "", existing.get("line") or 0, meta.fingerprint)
            if meta.source_name == self.tool_name:
                # Dropped again below when the same result is still reported.
                self._outdated[meta.fingerprint] = existing

    def _repo_base_html_url(self) -> str:
        try:
            repository = self.client.get_repository(self.owner, self.repo)
        except GitHubAPIError as exc:
            raise ServiceError(f"failed to build repo base HTML URL: {exc}") from exc
        return f"{repository.get('html_url') or ''}/blob/{self.sha}"

    def _post_as_review_comment(self) -> None:
        if self._fallback_to_log:
            # No permission for review comments: report through the log.
            for comment in self._post_comments:
                self._log_writer.post(comment)
            self._log_writer.flush()
            return

        comments, self._post_comments = self._post_comments, []
        review_comments: list[dict] = []
        file_comments: list[dict] = []
        remaining: list[Comment] = []
        root = get_git_root()
        base_url = self._repo_base_html_url()

        for comment in comments:
            if not comment.result.in_diff_file:
                # The review API cannot report outside the diff files.
                if is_in_github_actions():
                    self._log_writer.post(comment)
                continue
            fprint = fingerprint(comment.result.diagnostic)
            if self._posted.is_posted(comment, comment_line(comment), fprint):
                self._outdated.pop(fprint, None)
                continue
            if comment.result.in_diff_context:
                # Limit comments per request to avoid abuse detection.
                if len(review_comments) >= MAX_COMMENTS_PER_REQUEST:
                    remaining.append(comment)
                    continue
                body = build_body(comment, base_url, root, fprint, self.tool_name)
                review_comments.append(_draft_review_comment(comment, body))
            else:
                if len(file_comments) >= MAX_FILE_COMMENTS:
                    remaining.append(comment)
                    continue
                body = build_body(comment, base_url, root, fprint, self.tool_name)
                file_comments.append(_file_comment(comment, body, self.sha))
        self._log_writer.flush()

        try:
            if review_comments or remaining:
                review = {
                    "commit_id": self.sha,
                    "event": "COMMENT",
                    "comments": review_comments,
                    "body": self._remaining_comments_summary(remaining, base_url, root),
                }
                try:
                    self.client.create_review(self.owner, self.repo, self.pr, review)
                except GitHubAPIError as exc:
                    _log.error("reviewdog: failed to post a review comment: %s", exc)
                    raise
            for file_comment in file_comments:
                try:
                    self.client.create_comment(self.owner, self.repo, self.pr, file_comment)
                except GitHubAPIError as exc:
                    _log.error("reviewdog: failed to post a pull request comment: %s", exc)
                    raise
        except GitHubAPIError as exc:
            if _is_permission_error(exc) and is_in_github_actions():
                self._fall_back()
                return
            raise

        for outdated in self._outdated.values():
            comment_id = outdated.get("id") or 0
            if comment_id in self._replied:
                continue  # keep comments somebody replied to
            try:
                self.client.delete_comment(self.owner, self.repo, comment_id)
            except GitHubAPIError as exc:
                raise ServiceError(f"failed to delete comment (id={comment_id}): {exc}") from exc

    def _fall_back(self) -> None:
        print(_FALLBACK_MESSAGE, file=sys.stderr)
        self._fallback_to_log = True
        self._log_writer.flush()

    def _remaining_comments_summary(self, remaining: list[Comment], base_url: str, root: str) -> str:
        if not remaining:
            return ""
        per_tool: dict[str, list[Comment]] = {}
        for comment in remaining:
            per_tool.setdefault(comment.tool_name, []).append(comment)
        parts = [
            "Remaining comments which cannot be posted as a review comment "
            "to avoid GitHub Rate Limit\n",
            "\n",
        ]
        for tool, comments in per_tool.items():
            parts.append(f"<details>\n<summary>{tool}</summary>\n\n")
            for comment in comments:
                url = code_snippet_url(base_url, root, comment.result.diagnostic.location)
                parts.append(f"<hr>\n\n{markdown_comment(comment)}\n\n{url}\n\n")
            parts.append("</details>\n")
        return "".join(parts)