"""HTTP client for the remote task/profile service."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from taskpipe import __version__
from taskpipe.models import AgentProfile, Task

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_USER_AGENT = f"taskpipe/{__version__}"


class ApiError(Exception):
    """Request to the task service failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NetworkError(ApiError):
    """Transport failure or timeout; no HTTP response was received."""


class AuthenticationError(ApiError):
    """401: the API key was rejected."""


class ForbiddenError(ApiError):
    """403: the key is valid but not allowed to perform the request."""


class RateLimitError(ApiError):
    """429: too many requests."""

    def __init__(
        self, message: str, status_code: int = 429, retry_after: int | None = None
    ) -> None:
        super().__init__(message, status_code)
        self.retry_after = retry_after


class ServerError(ApiError):
    """5xx from the service."""


def _parse_retry_after(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return max(int(value.strip()), 0)
    except ValueError:
        return None


def _error_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return f"HTTP {response.status_code}"


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    status = response.status_code
    message = _error_text(response)
    if status == 401:
        raise AuthenticationError(message, status)
    if status == 403:
        raise ForbiddenError(message, status)
    if status == 429:
        raise RateLimitError(
            message,
            status,
            retry_after=_parse_retry_after(response.headers.get("retry-after")),
        )
    if status >= 500:
        raise ServerError(message, status)
    raise ApiError(message, status)


def describe_api_error(exc: ApiError) -> str:
    """User-facing message that keeps auth, rate-limit and server failures apart."""
    if isinstance(exc, AuthenticationError):
        return "Invalid API key. Please check your configuration."
    if isinstance(exc, ForbiddenError):
        return f"Access forbidden: {exc}"
    if isinstance(exc, RateLimitError):
        if exc.retry_after is not None:
            return f"Rate limit exceeded. Retry after {exc.retry_after} seconds."
        return "Rate limit exceeded. Please try again later."
    if isinstance(exc, ServerError):
        return "Server error. Please try again later."
    if isinstance(exc, NetworkError):
        return "Network error. Please check your connection."
    return f"Request failed: {exc}"


class TaskosClient:
    """Bearer-authenticated JSON client for tasks, profiles, conventions and AI endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._timeout = httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0))
        self._client = httpx.Client(
            timeout=self._timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "User-Agent": DEFAULT_USER_AGENT,
            },
            transport=transport,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.base_url and self.api_key)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> TaskosClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        json: object | None = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        url = f"{self.base_url}{endpoint}"
        kwargs: dict[str, Any] = {}
        if json is not None:
            kwargs["json"] = json
        if params:
            kwargs["params"] = params
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Timeout calling {method} {endpoint}") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"{method} {endpoint} failed: {exc}") from exc

        _raise_for_status(response)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ApiError(
                f"Invalid JSON from {method} {endpoint}", response.status_code
            ) from exc

    # ── Tasks ────────────────────────────────────────────────────────

    def list_tasks(
        self,
        workspace_id: str,
        *,
        status: str | None = None,
        priority: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> tuple[list[Task], int]:
        params: dict[str, Any] = {"workspaceId": workspace_id}
        for key, value in (
            ("status", status),
            ("priority", priority),
            ("limit", limit),
            ("offset", offset),
        ):
            if value is not None:
                params[key] = value
        data = self._request("GET", "/tasks", params=params)
        tasks = [Task.model_validate(t) for t in data.get("tasks") or []]
        return tasks, int(data.get("total") or 0)

    def get_task(self, task_id: str) -> Task:
        data = self._request("GET", f"/tasks/{task_id}")
        return Task.model_validate(data["task"])

    def update_task(self, task_id: str, **fields: Any) -> Task:
        data = self._request("PUT", f"/tasks/{task_id}", json=fields)
        return Task.model_validate(data["task"])

    # ── Profiles ─────────────────────────────────────────────────────

    def list_profiles(
        self, workspace_id: str, profile_type: str | None = None
    ) -> list[AgentProfile]:
        params = {"type": profile_type} if profile_type else None
        data = self._request("GET", f"/workspaces/{workspace_id}/profiles", params=params)
        return [AgentProfile.model_validate(p) for p in data.get("profiles") or []]

    def create_profile(
        self,
        workspace_id: str,
        *,
        profile_type: str,
        name: str,
        config: dict[str, Any],
        is_default: bool = False,
    ) -> AgentProfile:
        body = {
            "type": profile_type,
            "name": name,
            "config": config,
            "isDefault": is_default,
        }
        data = self._request("POST", f"/workspaces/{workspace_id}/profiles", json=body)
        return AgentProfile.model_validate(data["profile"])

    def update_profile(
        self, workspace_id: str, profile_id: str, updates: dict[str, Any]
    ) -> AgentProfile:
        data = self._request(
            "PUT", f"/workspaces/{workspace_id}/profiles/{profile_id}", json=updates
        )
        return AgentProfile.model_validate(data["profile"])

    def delete_profile(self, workspace_id: str, profile_id: str) -> None:
        self._request("DELETE", f"/workspaces/{workspace_id}/profiles/{profile_id}")

    # ── Conventions ──────────────────────────────────────────────────

    def get_branch_convention(
        self, workspace_id: str, *, timeout: float | None = None
    ) -> tuple[dict[str, Any], bool]:
        """Raw convention config and whether the workspace customised it."""
        data = self._request(
            "GET", f"/workspaces/{workspace_id}/branch-convention", timeout=timeout
        )
        config = data.get("config")
        if not isinstance(config, dict):
            raise ApiError("Branch convention response has no config object")
        return config, bool(data.get("isCustom", False))

    # ── AI endpoints ─────────────────────────────────────────────────

    def review_code(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = self._request("POST", "/ai/code-review", json=payload)
        if not isinstance(data, dict):
            raise ApiError("Code review response is not an object")
        return data

    def generate_code(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", "/ai/generate-code", json=payload)

    def generate_commit_message(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", "/ai/generate-commit", json=payload)
