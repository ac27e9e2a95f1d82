"""Compute the diff of a GitLab merge request with local git."""

from __future__ import annotations

import os
import subprocess

from reviewpost.gitlab_api import GitLabClient
from reviewpost.model import ServiceError
from reviewpost.serviceutil import git_rel_workdir


def _git_output(*args: str) -> bytes:
    try:
        completed = subprocess.run(["git", *args], capture_output=True, check=False)
    except OSError as exc:
        raise ServiceError(str(exc)) from exc
    if completed.returncode != 0:
        raise ServiceError(f"exit status {completed.returncode}")
    return completed.stdout or b""


class MergeRequestDiff:
    """A diff service for a GitLab merge request.

    The diff is produced by ``git diff --find-renames`` against the merge base,
    which suits the comment API better than the rename-less diff GitLab serves.
    """

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

    def strip(self) -> int:
        return 1

    def diff(self) -> bytes:
        """Return the diff between the merge base and the merge request head."""
        mr = self.client.get_merge_request(self.project, self.pr)
        branch = self.client.get_branch(
            mr.get("target_project_id", ""), mr.get("target_branch") or ""
        )
        target_sha = (branch.get("commit") or {}).get("id") or ""
        return self._git_diff(self.sha, target_sha)

    @staticmethod
    def _git_diff(base_sha: str, target_sha: str) -> bytes:
        merge_base = os.environ.get("CI_MERGE_REQUEST_DIFF_BASE_SHA", "")
        if not merge_base:
            try:
                output = _git_output("merge-base", target_sha, base_sha)
            except ServiceError as exc:
                raise ServiceError(f"failed to get merge-base commit: {exc}") from exc
            merge_base = output.decode("utf-8", errors="replace").strip("\n")
        try:
            return _git_output("diff", "--find-renames", merge_base, base_sha)
        except ServiceError as exc:
            raise ServiceError(f"failed to run git diff: {exc}") from exc