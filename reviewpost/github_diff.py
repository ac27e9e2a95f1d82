"""Fetch the diff of a GitHub pull request."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass

from reviewpost.github_api import GitHubAPIError, GitHubClient
from reviewpost.model import ServiceError

_log = logging.getLogger(__name__)

_NOT_ACCEPTABLE = 406


def _run_git(*args: str) -> tuple[int, bytes]:
    completed = subprocess.run(
        ["git", *args], stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=False
    )
    return completed.returncode, completed.stdout or b""


@dataclass
class PullRequestDiffService:
    """A diff service backed by the GitHub pull request diff API."""

    client: GitHubClient
    owner: str
    repo: str
    pr: int
    sha: str = ""
    fallback_to_git_cli: bool = False

    def strip(self) -> int:
        return 1

    def diff(self) -> bytes:
        """Return the pull request diff, falling back to git when it is too large."""
        try:
            return self.client.get_raw_diff(self.owner, self.repo, self.pr)
        except GitHubAPIError as exc:
            if self.fallback_to_git_cli and exc.status_code == _NOT_ACCEPTABLE:
                _log.warning("reviewdog: fallback to use git command")
                return self._diff_using_git_command()
            raise

    def _diff_using_git_command(self) -> bytes:
        pull = self.client.get_pull_request(self.owner, self.repo, self.pr)
        head = pull.get("head") or {}
        head_sha = head.get("sha") or ""
        base_sha = (pull.get("base") or {}).get("sha") or ""

        comparison = self.client.compare_commits(self.owner, self.repo, head_sha, base_sha)
        merge_base_sha = (comparison.get("merge_base_commit") or {}).get("sha") or ""

        if os.environ.get("REVIEWDOG_SKIP_GIT_FETCH") != "true":
            head_url = (head.get("repo") or {}).get("html_url") or ""
            for sha in (merge_base_sha, head_sha):
                code, output = _run_git("fetch", "--depth=1", head_url, sha)
                if code != 0:
                    raise ServiceError(
                        f"failed to run git fetch: {output.decode(errors='replace')}\n"
                        f"exit status {code}"
                    )

        code, output = _run_git("diff", "--find-renames", merge_base_sha, head_sha)
        if code != 0:
            raise ServiceError(
                f"failed to run git diff: {output.decode(errors='replace')}\nexit status {code}"
            )
        return output