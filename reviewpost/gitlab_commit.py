"""Post results as commit comments of a GitLab merge request."""

from __future__ import annotations

import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor

from reviewpost.gitlab_api import GitLabAPIError, GitLabClient
from reviewpost.model import (
    Comment,
    PostedComments,
    ServiceError,
    join_workdir,
    markdown_comment,
)
from reviewpost.serviceutil import git_rel_workdir

_MAX_WORKERS = 8


def _last_commit_id(path: str, line: int) -> str:
    """Return the commit that last touched ``line`` of ``path``."""
    try:
        completed = subprocess.run(
            ["git", "blame", "-l", "-L", f"{line},{line}", path],
            capture_output=True,
            check=False,
        )
    except OSError as exc:
        raise ServiceError(f"failed to get commitID: {exc}") from exc
    if completed.returncode != 0:
        raise ServiceError(f"failed to get commitID: exit status {completed.returncode}")
    return (completed.stdout or b"").decode("utf-8", errors="replace").split(" ")[0]


class MergeRequestCommitCommenter:
    """A comment service that posts to the commits of a GitLab merge request."""

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
                    f"MergeRequestCommitCommenter needs 'git' command: {exc}"
                ) from exc
        self.client = client
        self.pr = pr
        self.sha = sha
        self.project = f"{owner}/{repo}"
        self._workdir = workdir
        self._lock = threading.Lock()
        self._post_comments: list[Comment] = []
        self._posted = PostedComments()

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
                self._post_comments_for_each()
            finally:
                self._post_comments = []

    def _post_comments_for_each(self) -> None:
        jobs = []
        for comment in self._post_comments:
            location = comment.result.diagnostic.location
            line = location.range.start_line
            body = markdown_comment(comment)
            if (
                not comment.result.in_diff_file
                or line == 0
                or self._posted.is_posted(comment, line, body)
            ):
                continue
            jobs.append((location.path, line, body))
        if not jobs:
            return
        with ThreadPoolExecutor(max_workers=min(len(jobs), _MAX_WORKERS)) as pool:
            futures = [pool.submit(self._post_one, *job) for job in jobs]
        for future in futures:
            future.result()

    def _post_one(self, path: str, line: int, body: str) -> None:
        try:
            commit_id = _last_commit_id(path, line)
        except ServiceError:
            commit_id = self.sha
        payload = {"note": body, "path": path, "line": line, "line_type": "new"}
        self.client.post_commit_comment(self.project, commit_id, payload)

    def _set_posted_comments(self) -> None:
        self._posted = PostedComments()
        for existing in self._existing_comments():
            line = existing.get("line") or 0
            path = existing.get("path") or ""
            note = existing.get("note") or ""
            if not line or not path or not note:
                continue
            self._posted.add(path, line, note)

    def _existing_comments(self) -> list[dict]:
        commits = self.client.list_merge_request_commits(self.project, self.pr)
        comments: list[dict] = []
        for commit in commits:
            try:
                comments.extend(self.client.get_commit_comments(self.project, commit.get("id") or ""))
            except GitLabAPIError:
                continue
        return comments