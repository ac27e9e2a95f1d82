"""A small client for the parts of the GitLab REST API the services use."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import requests

from reviewpost.model import ServiceError

DEFAULT_BASE_URL = "https://gitlab.com/api/v4"
_PER_PAGE = 100


class GitLabAPIError(ServiceError):
    """Raised when a GitLab API request fails."""

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
    if isinstance(data, dict):
        for key in ("message", "error"):
            if data.get(key):
                return str(data[key])
    return response.text


def _decode(response: requests.Response, empty: Any) -> Any:
    if not response.content.strip():
        return empty
    return response.json()


class GitLabClient:
    """Send requests to the GitLab REST API (v4)."""

    def __init__(
        self,
        token: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
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
        url = f"{self.base_url}/{path}"
        headers = {"Accept": "application/json"}
        if self._token:
            headers["PRIVATE-TOKEN"] = self._token
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
            raise GitLabAPIError(f"{method} {url}: {exc}") from exc
        if response.status_code >= 400:
            raise GitLabAPIError(
                f"{method} {response.url}: {response.status_code} {_error_message(response)}",
                response.status_code,
            )
        return response

    @staticmethod
    def _project_path(project: object) -> str:
        return f"projects/{_segment(project)}"

    def get_merge_request(self, project: object, iid: int) -> dict:
        path = f"{self._project_path(project)}/merge_requests/{iid}"
        return _decode(self._request("GET", path), {})

    def get_branch(self, project: object, branch: str) -> dict:
        path = f"{self._project_path(project)}/repository/branches/{_segment(branch)}"
        return _decode(self._request("GET", path), {})

    def list_merge_request_commits(self, project: object, iid: int) -> list[dict]:
        path = f"{self._project_path(project)}/merge_requests/{iid}/commits"
        return _decode(self._request("GET", path), [])

    def get_commit_comments(self, project: object, sha: str) -> list[dict]:
        path = f"{self._project_path(project)}/repository/commits/{_segment(sha)}/comments"
        return _decode(self._request("GET", path), [])

    def post_commit_comment(self, project: object, sha: str, payload: dict) -> dict:
        path = f"{self._project_path(project)}/repository/commits/{_segment(sha)}/comments"
        return _decode(self._request("POST", path, payload=payload), {})

    def list_discussions(self, project: object, iid: int) -> list[dict]:
        """Return every discussion of a merge request, following pagination."""
        path = f"{self._project_path(project)}/merge_requests/{iid}/discussions"
        discussions: list[dict] = []
        page = ""
        while True:
            params: dict[str, Any] = {"per_page": _PER_PAGE}
            if page:
                params["page"] = page
            response = self._request("GET", path, params=params)
            discussions.extend(_decode(response, []))
            page = response.headers.get("X-Next-Page", "").strip()
            if not page or page == "0":
                return discussions

    def create_discussion(self, project: object, iid: int, payload: dict) -> dict:
        path = f"{self._project_path(project)}/merge_requests/{iid}/discussions"
        return _decode(self._request("POST", path, payload=payload), {})