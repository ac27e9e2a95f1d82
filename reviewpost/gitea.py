"""Post results as review comments on a Gitea pull request."""

from __future__ import annotations

import threading
from typing import Any
from urllib.parse import parse_qs, quote, urlsplit

import requests

from reviewpost.model import (
    Comment,
    PostedComments,
    ServiceError,
    join_workdir,
    markdown_comment,
)
from reviewpost.serviceutil import git_rel_workdir

REVIEW_STATE_COMMENT = "COMMENT"
_PAGE_SIZE = 100


class GiteaAPIError(ServiceError):
    """Raised when a Gitea API request fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _segment(value: object) -> str:
    return quote(str(value), safe="")


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.text


def _decode(response: requests.Response, empty: Any) -> Any:
    if not response.content.strip():
        return empty
    return response.json()


def _next_page(response: requests.Response) -> str | None:
    next_url = response.links.get("next", {}).get("url")
    if not next_url:
        return None
    pages = parse_qs(urlsplit(next_url).query).get("page")
    return pages[0] if pages else None


class GiteaClient:
    """Send requests to the Gitea REST API (v1)."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.api_url = base_url.rstrip("/") + "/api/v1"
        self.session = session or requests.Session()
        self.timeout = timeout
        self._token = token

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        payload: Any = None,
    ) -> requests.Response:
        url = f"{self.api_url}/{path}"
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"token {self._token}"
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise GiteaAPIError(f"{method} {url}: {exc}") from exc
        if response.status_code >= 400:
            raise GiteaAPIError(
                f"{method} {response.url}: {response.status_code} {_error_message(response)}",
                response.status_code,
            )
        return response

    @staticmethod
    def _pull_path(owner: str, repo: str, number: int) -> str:
        return f"repos/{_segment(owner)}/{_segment(repo)}/pulls/{number}"

    def get_pull_request_diff(self, owner: str, repo: str, number: int) -> bytes:
        """Return the unified diff of a pull request, without binary patches."""
        path = self._pull_path(owner, repo, number) + ".diff"
        return self._request("GET", path, params={"binary": "false"}).content

    def list_pull_reviews(self, owner: str, repo: str, number: int) -> list[dict]:
        """Return every review of a pull request, following pagination."""
        path = self._pull_path(owner, repo, number) + "/reviews"
        reviews: list[dict] = []
        page: str | None = "1"
        while page:
            response = self._request("GET", path, params={"page": page, "limit": _PAGE_SIZE})
            reviews.extend(_decode(response, []))
            page = _next_page(response)
        return reviews

    def list_pull_review_comments(
        self, owner: str, repo: str, number: int, review_id: int
    ) -> list[dict]:
        path = f"{self._pull_path(owner, repo, number)}/reviews/{review_id}/comments"
        return _decode(self._request("GET", path), [])

    def create_pull_review(self, owner: str, repo: str, number: int, payload: dict) -> dict:
        path = self._pull_path(owner, repo, number) + "/reviews"
        return _decode(self._request("POST", path, payload=payload), {})


def gitea_comment_line(comment: Comment) -> int:
    """Return the line a review comment is attached to (0 outside the diff context).

    For a multi-line result this is its end line, otherwise its start line.
    """
    if not comment.result.in_diff_context:
        return 0
    rng = comment.result.diagnostic.location.range
    start = rng.start_line
    return rng.end_line or start


def _review_comment(comment: Comment, body: str) -> dict[str, Any]:
    return {
        "body": body,
        "path": comment.result.diagnostic.location.path,
        "new_position": gitea_comment_line(comment),
    }


class GiteaPullRequest:
    """A comment and diff service for a Gitea pull request."""

    def __init__(
        self,
        client: GiteaClient | None,
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
                raise ServiceError(f"pull request needs 'git' command: {exc}") from exc
        self.client = client
        self.owner = owner
        self.repo = repo
        self.pr = pr
        self.sha = sha
        self._workdir = workdir
        self._lock = threading.Lock()
        self._post_comments: list[Comment] = []
        self._posted = PostedComments()

    def diff(self) -> bytes:
        """Return the diff of the pull request."""
        return self.client.get_pull_request_diff(self.owner, self.repo, self.pr)

    def strip(self) -> int:
        return 1

    def post(self, comment: Comment) -> None:
        """Hold a comment until flush."""
        location = comment.result.diagnostic.location
        location.path = join_workdir(self._workdir, location.path)
        with self._lock:
            self._post_comments.append(comment)

    def flush(self) -> None:
        """Post every held comment that was not posted before, as one review."""
        with self._lock:
            try:
                self._set_posted_comments()
                self._post_as_review_comment()
            finally:
                self._post_comments = []

    def _set_posted_comments(self) -> None:
        self._posted = PostedComments()
        for existing in self._existing_comments():
            line = existing.get("position") or 0
            path = existing.get("path") or ""
            body = existing.get("body") or ""
            if not line or not path or not body:
                continue
            self._posted.add(path, int(line), body)

    def _existing_comments(self) -> list[dict]:
        reviews = self.client.list_pull_reviews(self.owner, self.repo, self.pr)
        comments: list[dict] = []
        for review in reviews:
            comments.extend(
                self.client.list_pull_review_comments(
                    self.owner, self.repo, self.pr, review.get("id") or 0
                )
            )
        return comments

    def _post_as_review_comment(self) -> None:
        comments, self._post_comments = self._post_comments, []
        review_comments = []
        for comment in comments:
            if not comment.result.in_diff_file:
                continue
            body = markdown_comment(comment)
            if self._posted.is_posted(comment, gitea_comment_line(comment), body):
                continue
            if not comment.result.in_diff_context:
                continue
            review_comments.append(_review_comment(comment, body))

        if review_comments:
            review = {
                "commit_id": self.sha,
                "event": REVIEW_STATE_COMMENT,
                "comments": review_comments,
            }
            self.client.create_pull_review(self.owner, self.repo, self.pr, review)