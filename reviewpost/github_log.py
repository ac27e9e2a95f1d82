"""Report results as GitHub Actions logging commands."""

from __future__ import annotations

from reviewpost.ghactions import ActionLogWriter
from reviewpost.model import Comment, join_workdir
from reviewpost.serviceutil import git_rel_workdir


class GitHubActionLog:
    """A comment service that writes GitHub Actions annotations to the log."""

    def __init__(self, level: str = "", workdir: str | None = None) -> None:
        self._writer = ActionLogWriter(level)
        self._workdir = git_rel_workdir() if workdir is None else workdir

    def post(self, comment: Comment) -> None:
        location = comment.result.diagnostic.location
        location.path = join_workdir(self._workdir, location.path)
        self._writer.post(comment)

    def flush(self) -> None:
        """Raise if more annotations were written than GitHub shows."""
        self._writer.flush()