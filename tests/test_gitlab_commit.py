import json
import subprocess
from unittest import mock

import pytest
import responses

from reviewpost.gitlab_api import GitLabClient
from reviewpost.gitlab_commit import MergeRequestCommitCommenter
from reviewpost.model import (
    BODY_PREFIX,
    Comment,
    Diagnostic,
    FilteredDiagnostic,
    Location,
    Position,
    Range,
    ServiceError,
    markdown_comment,
)

API = "https://gitlab.example.com/api/v4"
PROJECT = API + "/projects/o%2Fr"


@pytest.fixture
def api():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


def _comment(path, line, message, in_diff_file=True):
    rng = Range(start=Position(line=line)) if line else Range()
    return Comment(
        result=FilteredDiagnostic(
            diagnostic=Diagnostic(message=message, location=Location(path=path, range=rng)),
            in_diff_file=in_diff_file,
        )
    )


def _register_existing(api, posted):
    api.add(
        responses.GET,
        PROJECT + "/merge_requests/14/commits",
        json=[{"id": "0123456789abcdef", "short_id": "012345678"}],
    )
    api.add(
        responses.GET,
        PROJECT + "/repository/commits/0123456789abcdef/comments",
        json=[{"path": "notExistFile.go", "line": 1, "note": BODY_PREFIX + "already commented"}],
    )

    def callback(request):
        posted.append((request.url, json.loads(request.body)))
        return (201, {}, request.body)

    return callback


def _blame(code, stdout=b""):
    def run(args, **kwargs):
        return subprocess.CompletedProcess(args, code, stdout=stdout, stderr=b"")

    return run


def test_post_flush_posts_only_new_comments(api):
    posted = []
    callback = _register_existing(api, posted)
    api.add_callback(
        responses.POST, PROJECT + "/repository/commits/sha/comments", callback=callback
    )
    commenter = MergeRequestCommitCommenter(GitLabClient(base_url=API), "o", "r", 14, "sha", workdir="")
    new = _comment("notExistFile.go", 14, "new comment")
    commenter.post(_comment("notExistFile.go", 1, "already commented"))
    commenter.post(new)
    commenter.post(_comment("notExistFile.go", 20, "outside", in_diff_file=False))
    commenter.post(_comment("notExistFile.go", 0, "no line"))
    with mock.patch("subprocess.run", side_effect=_blame(128)):
        commenter.flush()
    assert new.result.diagnostic.location.path == "notExistFile.go"
    assert len(api.calls) == 3
    assert [body for _, body in posted] == [
        {
            "note": markdown_comment(new),
            "path": "notExistFile.go",
            "line": 14,
            "line_type": "new",
        }
    ]
    assert posted[0][1]["note"] == BODY_PREFIX + "new comment"


def test_flush_uses_commit_from_blame(api):
    posted = []
    callback = _register_existing(api, posted)
    api.add_callback(
        responses.POST, PROJECT + "/repository/commits/abc123/comments", callback=callback
    )
    commenter = MergeRequestCommitCommenter(GitLabClient(base_url=API), "o", "r", 14, "sha", workdir="")
    new = _comment("file.go", 14, "new comment")
    commenter.post(new)
    with mock.patch("subprocess.run", side_effect=_blame(0, b"abc123 (someone 1) code\n")) as run:
        commenter.flush()
    assert run.call_args.args[0] == ["git", "blame", "-l", "-L", "14,14", "file.go"]
    assert len(posted) == 1
    assert posted[0][0].endswith("/repository/commits/abc123/comments")
    assert posted[0][1]["note"] == markdown_comment(new)


def test_post_prefixes_workdir(tmp_path, monkeypatch):
    (tmp_path / ".git").mkdir()
    (tmp_path / "cmd").mkdir()
    monkeypatch.chdir(tmp_path)
    comment = _comment("a/b/c", 0, "m")
    MergeRequestCommitCommenter(None, "", "", 0, "").post(comment)
    assert comment.result.diagnostic.location.path == "a/b/c"

    monkeypatch.chdir(tmp_path / "cmd")
    comment = _comment("a/b/c", 0, "m")
    MergeRequestCommitCommenter(None, "", "", 0, "").post(comment)
    assert comment.result.diagnostic.location.path == "cmd/a/b/c"


def test_constructor_fails_without_repository(tmp_path, monkeypatch):
    (tmp_path / ".git").write_text("not a directory")
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ServiceError, match="needs 'git' command"):
        MergeRequestCommitCommenter(None, "o", "r", 1, "sha")