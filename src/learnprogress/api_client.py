"""Client for the remote progress API."""

from __future__ import annotations

import logging
from typing import Any

import requests

from .errors import ApiError, NetworkError, NotFoundError, ServerError, UnauthorizedError

logger = logging.getLogger(__name__)

STATS_ENDPOINT = "/api/v1/users/me/stats"
COMPLETION_ENDPOINT = "/api/v1/learning/progress/complete/{lesson_id}/explanation"


class ProgressApiClient:
    """
    Thin JSON client for the stats and lesson-completion endpoints.

    Timeouts are enforced per request. Retrying is left to the caller; both
    calls are safe to repeat because the engine applies their results
    idempotently.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()
        logger.info("Progress API client initialized for endpoint: %s", self.base_url)

    def _get_endpoint(self, path: str) -> str:
        """Constructs the full API endpoint URL."""
        return f"{self.base_url}{path}"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        url = self._get_endpoint(path)
        logger.debug("API request: %s %s", method, path)
        try:
            response = self.session.request(method, url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            logger.warning("API request %s %s failed: %s", method, path, exc)
            raise NetworkError(f"Could not reach {self.base_url}: {exc}") from exc

        status = response.status_code
        logger.debug("API response: %d", status)
        if 200 <= status < 300:
            try:
                return response.json()
            except ValueError as exc:
                raise ApiError("Response body is not valid JSON.", status_code=status) from exc
        if status == 401:
            self.token = None
            raise UnauthorizedError("Unauthorized.", status_code=status)
        if status == 404:
            raise NotFoundError(f"Not found: {path}", status_code=status)
        if 500 <= status < 600:
            raise ServerError(f"Server error ({status}).", status_code=status)
        raise ApiError(_error_detail(response) or "Unknown error", status_code=status)

    def fetch_stats(self) -> dict[str, Any]:
        """Fetch the learner's authoritative progress stats."""
        body = self._request("GET", STATS_ENDPOINT)
        if not isinstance(body, dict):
            raise ApiError("Stats response must be a JSON object.")
        return body

    def report_completion(self, lesson_id: str, quiz_score: int | None = None) -> int:
        """Report a lesson completion and return the XP the server credited."""
        body = self._request("POST", COMPLETION_ENDPOINT.format(lesson_id=lesson_id), {"quiz_score": quiz_score})
        if not isinstance(body, dict) or "xp_earned" not in body:
            raise ApiError("Completion response is missing xp_earned.")
        try:
            return int(body["xp_earned"])
        except (TypeError, ValueError) as exc:
            raise ApiError(f"Invalid xp_earned value: {body['xp_earned']!r}") from exc

    def close(self) -> None:
        """Closes the underlying requests session."""
        self.session.close()

    def __enter__(self) -> ProgressApiClient:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()


def _error_detail(response: requests.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        detail = body.get("detail")
        if isinstance(detail, str):
            return detail
    return None
