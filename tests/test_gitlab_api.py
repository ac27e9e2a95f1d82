import json

import pytest
import responses
from responses import matchers

from reviewpost.gitlab_api import GitLabAPIError, GitLabClient

API = "https://gitlab.example.com/api/v4"
PROJECT = API + "/projects/o%2Fr"


@pytest.fixture
def api():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


def test_get_merge_request_encodes_project_and_sends_token(api):
    api.add(
        responses.GET,
        PROJECT + "/merge_requests/14",
        json={"target_project_id": 14, "target_branch": "test-branch"},
    )
    client = GitLabClient(token="token", base_url=API + "/")
    mr = client.get_merge_request("o/r", 14)
    assert mr == {"target_project_id": 14, "target_branch": "test-branch"}
    assert api.calls[0].request.headers["PRIVATE-TOKEN"] == "token"


def test_get_branch_with_numeric_project(api):
    api.add(
        responses.GET,
        API + "/projects/14/repository/branches/test-branch",
        json={"commit": {"id": "xxx"}},
    )
    client = GitLabClient(base_url=API)
    assert client.get_branch(14, "test-branch") == {"commit": {"id": "xxx"}}
    assert "PRIVATE-TOKEN" not in api.calls[0].request.headers


def test_list_discussions_follows_next_page(api):
    url = PROJECT + "/merge_requests/14/discussions"
    api.add(
        responses.GET,
        url,
        json=[{"id": "a"}],
        headers={"X-Next-Page": "2"},
        match=[matchers.query_param_matcher({"per_page": "100"})],
    )
    api.add(
        responses.GET,
        url,
        json=[{"id": "b"}],
        match=[matchers.query_param_matcher({"per_page": "100", "page": "2"})],
    )
    client = GitLabClient(base_url=API)
    assert client.list_discussions("o/r", 14) == [{"id": "a"}, {"id": "b"}]
    assert len(api.calls) == 2


def test_commits_and_comments(api):
    api.add(
        responses.GET,
        PROJECT + "/merge_requests/14/commits",
        json=[{"id": "0123456789abcdef", "short_id": "012345678"}],
    )
    api.add(
        responses.GET,
        PROJECT + "/repository/commits/0123456789abcdef/comments",
        json=[{"path": "notExistFile.go", "line": 1, "note": "already commented"}],
    )
    client = GitLabClient(base_url=API)
    commits = client.list_merge_request_commits("o/r", 14)
    assert [c["id"] for c in commits] == ["0123456789abcdef"]
    comments = client.get_commit_comments("o/r", commits[0]["id"])
    assert comments[0]["path"] == "notExistFile.go"


def test_post_commit_comment_sends_payload(api):
    def callback(request):
        return (201, {}, request.body)

    api.add_callback(
        responses.POST, PROJECT + "/repository/commits/sha/comments", callback=callback
    )
    payload = {"note": "n", "path": "p.go", "line": 14, "line_type": "new"}
    client = GitLabClient(base_url=API)
    assert client.post_commit_comment("o/r", "sha", payload) == payload
    assert json.loads(api.calls[0].request.body) == payload


def test_create_discussion_sends_payload(api):
    api.add(responses.POST, PROJECT + "/merge_requests/14/discussions", body="")
    payload = {"body": "b", "position": {"new_path": "file.go", "new_line": 14}}
    client = GitLabClient(base_url=API)
    assert client.create_discussion("o/r", 14, payload) == {}
    assert json.loads(api.calls[0].request.body) == payload


def test_error_status_raises(api):
    api.add(
        responses.GET,
        PROJECT + "/merge_requests/99",
        json={"message": "404 Not Found"},
        status=404,
    )
    client = GitLabClient(base_url=API)
    with pytest.raises(GitLabAPIError) as info:
        client.get_merge_request("o/r", 99)
    assert info.value.status_code == 404
    assert "404 Not Found" in str(info.value)