"""A small client for the parts of the GitHub REST API the services use."""

from __future__ import annotations

from typing import Any
from urllib.parse import parse_qs, quote, urlsplit

import requests

from reviewpost.model import ServiceError

DEFAULT_BASE_URL = "https://api.github.com/"
JSON_MEDIA_TYPE = "application/vnd.github.v3+json"
DIFF_MEDIA_TYPE = "application/vnd.github.v3.diff"
_PER_PAGE = 100


class GitHubAPIError(ServiceError):
    """Raised when a GitHub API request fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


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


def _segment(value: object) -> str:
    return quote(str(value), safe="")


class GitHubClient:
    """Send requests to the GitHub REST API."""

    def __init__(
        self,
        token: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
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
        accept: str = JSON_MEDIA_TYPE,
    ) -> requests.Response:
        url = self.base_url + path
        headers = {"Accept": accept}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
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
            raise GitHubAPIError(f"{method} {url}: {exc}") from exc
        if response.status_code >= 400:
            raise GitHubAPIError(
                f"{method} {response.url}: {response.status_code} {_error_message(response)}",
                response.status_code,
            )
        return response

    @staticmethod
    def _repo_path(owner: str, repo: str) -> str:
        return f"repos/{_segment(owner)}/{_segment(repo)}"

    def get_raw_diff(self, owner: str, repo: str, number: int) -> bytes:
        """Return the unified diff of a pull request."""
        path = f"{self._repo_path(owner, repo)}/pulls/{number}"
        return self._request("GET", path, accept=DIFF_MEDIA_TYPE).content

    def get_pull_request(self, owner: str, repo: str, number: int) -> dict:
        path = f"{self._repo_path(owner, repo)}/pulls/{number}"
        return _decode(self._request("GET", path), {})

    def compare_commits(self, owner: str, repo: str, base: str, head: str) -> dict:
        path = f"{self._repo_path(owner, repo)}/compare/{_segment(base)}...{_segment(head)}"
        return _decode(self._request("GET", path), {})

    def create_check_run(self, owner: str, repo: str, payload: dict) -> dict:
        path = f"{self._repo_path(owner, repo)}/check-runs"
        return _decode(self._request("POST", path, payload=payload), {})

    def update_check_run(self, owner: str, repo: str, check_id: int, payload: dict) -> dict:
        path = f"{self._repo_path(owner, repo)}/check-runs/{check_id}"
        return _decode(self._request("PATCH", path, payload=payload), {})

    def list_review_comments(self, owner: str, repo: str, number: int) -> list[dict]:
        """Return every review comment of a pull request, following pagination."""
        path = f"{self._repo_path(owner, repo)}/pulls/{number}/comments"
        comments: list[dict] = []
        page: str | None = None
        while True:
            params: dict[str, Any] = {"per_page": _PER_PAGE}
            if page:
                params["page"] = page
            response = self._request("GET", path, params=params)
            comments.extend(_decode(response, []))
            page = _next_page(response)
            if not page:
                return comments

    def create_review(self, owner: str, repo: str, number: int, payload: dict) -> dict:
        path = f"{self._repo_path(owner, repo)}/pulls/{number}/reviews"
        return _decode(self._request("POST", path, payload=payload), {})

    def create_comment(self, owner: str, repo: str, number: int, payload: dict) -> dict:
        path = f"{self._repo_path(owner, repo)}/pulls/{number}/comments"
        return _decode(self._request("POST", path, payload=payload), {})

    def delete_comment(self, owner: str, repo: str, comment_id: int) -> None:
        path = f"{self._repo_path(owner, repo)}/pulls/comments/{comment_id}"
        self._request("DELETE", path)

    def get_repository(self, owner: str, repo: str) -> dict:
        return _decode(self._request("GET", self._repo_path(owner, repo)), {})