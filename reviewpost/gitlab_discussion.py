"""Post results as discussions on a GitLab merge request."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from reviewpost.gitlab_api import GitLabAPIError, GitLabClient
from reviewpost.model import (
    Comment,
    PostedComments,
    ServiceError,
    Suggestion,
    code_fence,
    code_fence_length,
    join_workdir,
    markdown_comment,
)
from reviewpost.serviceutil import git_rel_workdir

INVALID_SUGGESTION_PRE = "<details><summary>reviewdog suggestion error</summary>"
INVALID_SUGGESTION_POST = "</details>"

_MAX_WORKERS = 8


def _single_suggestion(suggestion: Suggestion) -> str:
    # A suggestion that holds a fenced code block needs a longer fence.
    text = suggestion.text
    fence = code_fence(code_fence_length(text))
    lines = suggestion.range.end.line - suggestion.range.start.line
    inner = text + "\n" if text else ""
    return f"{fence}suggestion:-0+{lines}\n{inner}{fence}"


def build_suggestions(comment: Comment) -> str:
    """Return GitLab suggestion blocks for every suggestion with a full range."""
    blocks = []
    for suggestion in comment.result.diagnostic.suggestions:
        rng = suggestion.range
        if rng is None or rng.start is None or rng.end is None:
            continue
        blocks.append(_single_suggestion(suggestion) + "\n")
    return "".join(blocks)


class MergeRequestDiscussionCommenter:
    """A comment service that opens discussions on a GitLab merge request."""

    def __init__(
        self,
        client: GitLabClient | None,
        owner: str,
        repo: str,
        pr: int,
        sha: str,
        workdir: str | None = None,
    ) -> None:
        if workdir is None:
            try:
                workdir = git_rel_workdir()
            except (OSError, ValueError) as exc:
                raise ServiceError(
                    f"MergeRequestDiscussionCommenter needs 'git' command: {exc}"
                ) from exc
        self.client = client
        self.pr = pr
        self.sha = sha
        self.project = f"{owner}/{repo}"
        self._workdir = workdir
        self._lock = threading.Lock()
        self._post_comments: list[Comment] = []

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
                try:
                    posted = self._create_posted_comments()
                except ServiceError as exc:
                    raise ServiceError(f"failed to create posted comments: {exc}") from exc
                self._post_comments_for_each(posted)
            finally:
                self._post_comments = []

    def _create_posted_comments(self) -> PostedComments:
        posted = PostedComments()
        try:
            discussions = self.client.list_discussions(self.project, self.pr)
        except GitLabAPIError as exc:
            raise ServiceError(f"failed to list all merge request discussions: {exc}") from exc
        for discussion in discussions:
            for note in discussion.get("notes") or []:
                position = note.get("position")
                body = note.get("body") or ""
                if not position or not position.get("new_path") or not position.get("new_line") or not body:
                    continue
                posted.add(position["new_path"], position["new_line"], body)
        return posted

    def _post_comments_for_each(self, posted: PostedComments) -> None:
        try:
            mr = self.client.get_merge_request(self.project, self.pr)
        except GitLabAPIError as exc:
            raise ServiceError(f"failed to get merge request: {exc}") from exc
        branch = self.client.get_branch(
            mr.get("target_project_id", ""), mr.get("target_branch") or ""
        )
        target_sha = (branch.get("commit") or {}).get("id") or ""

        payloads = []
        for comment in self._post_comments:
            location = comment.result.diagnostic.location
            line = location.range.start_line
            body = markdown_comment(comment)
            suggestions = build_suggestions(comment)
            if suggestions:
                body += "\n\n" + suggestions
            if not comment.result.in_diff_file or line == 0 or posted.is_posted(comment, line, body):
                continue
            position: dict[str, Any] = {
                "start_sha": target_sha,
                "head_sha": self.sha,
                "base_sha": target_sha,
                "position_type": "text",
                "new_path": location.path,
                "new_line": line,
            }
            if comment.result.old_path and comment.result.old_line:
                position["old_path"] = comment.result.old_path
                position["old_line"] = comment.result.old_line
            payloads.append({"body": body, "position": position})

        if not payloads:
            return
        with ThreadPoolExecutor(max_workers=min(len(payloads), _MAX_WORKERS)) as pool:
            futures = [pool.submit(self._create_discussion, payload) for payload in payloads]
        for future in futures:
            future.result()

    def _create_discussion(self, payload: dict) -> None:
        try:
            self.client.create_discussion(self.project, self.pr, payload)
        except GitLabAPIError as exc:
            raise ServiceError(f"failed to create merge request discussion: {exc}") from exc