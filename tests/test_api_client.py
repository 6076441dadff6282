from typing import Any

import requests

from learnprogress.api_client import COMPLETION_ENDPOINT, STATS_ENDPOINT, ProgressApiClient
from learnprogress.errors import ApiError, NetworkError, NotFoundError, ServerError, UnauthorizedError


class FakeResponse:
    def __init__(self, status_code: int, body: Any = None, invalid_json: bool = False) -> None:
        self.status_code = status_code
        self._body = body
        self._invalid_json = invalid_json

    def json(self) -> Any:
        if self._invalid_json:
            raise ValueError("not json")
        return self._body


class FakeSession:
    def __init__(self, response: FakeResponse | None = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if self.error is not None:
            raise self.error
        assert self.response is not None
        return self.response

    def close(self) -> None:
        self.closed = True


def _client(session: FakeSession, token: str | None = "tok") -> ProgressApiClient:
    return ProgressApiClient(
        "https://api.example.test/", token=token, timeout=5.0, session=session  # type: ignore[arg-type]
    )


def test_fetch_stats_sends_bearer_token() -> None:
    session = FakeSession(FakeResponse(200, {"total_xp": 10}))
    client = _client(session)
    assert client.fetch_stats() == {"total_xp": 10}
    call = session.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == "https://api.example.test" + STATS_ENDPOINT
    assert call["headers"]["Authorization"] == "Bearer tok"
    assert call["timeout"] == 5.0


def test_no_token_sends_no_authorization_header() -> None:
    session = FakeSession(FakeResponse(200, {}))
    _client(session, token=None).fetch_stats()
    assert "Authorization" not in session.calls[0]["headers"]


def test_report_completion_posts_quiz_score() -> None:
    session = FakeSession(FakeResponse(200, {"xp_earned": 150, "success": True}))
    client = _client(session)
    assert client.report_completion("superposition", quiz_score=80) == 150
    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"].endswith(COMPLETION_ENDPOINT.format(lesson_id="superposition"))
    assert call["json"] == {"quiz_score": 80}


def test_report_completion_requires_xp_earned() -> None:
    client = _client(FakeSession(FakeResponse(200, {"success": True})))
    try:
        client.report_completion("superposition")
        raise AssertionError("Expected ApiError for missing xp_earned.")
    except ApiError as exc:
        assert "xp_earned" in str(exc)


def test_unauthorized_clears_token() -> None:
    client = _client(FakeSession(FakeResponse(401, {"detail": "expired"})))
    try:
        client.fetch_stats()
        raise AssertionError("Expected UnauthorizedError.")
    except UnauthorizedError as exc:
        assert exc.status_code == 401
    assert client.token is None


def test_status_codes_map_to_errors() -> None:
    cases: list[tuple[int, type[ApiError]]] = [(404, NotFoundError), (500, ServerError), (503, ServerError)]
    for status, expected in cases:
        client = _client(FakeSession(FakeResponse(status, {})))
        try:
            client.fetch_stats()
            raise AssertionError(f"Expected {expected.__name__} for {status}.")
        except expected as exc:
            assert exc.status_code == status


def test_other_error_uses_detail_message() -> None:
    client = _client(FakeSession(FakeResponse(422, {"detail": "quiz_score out of range"})))
    try:
        client.report_completion("superposition", quiz_score=900)
        raise AssertionError("Expected ApiError.")
    except ApiError as exc:
        assert str(exc) == "quiz_score out of range"
        assert exc.status_code == 422


def test_network_failure_is_wrapped() -> None:
    client = _client(FakeSession(error=requests.exceptions.ConnectTimeout("slow")))
    try:
        client.fetch_stats()
        raise AssertionError("Expected NetworkError.")
    except NetworkError as exc:
        assert "Could not reach" in str(exc)


def test_invalid_json_body_is_api_error() -> None:
    client = _client(FakeSession(FakeResponse(200, invalid_json=True)))
    try:
        client.fetch_stats()
        raise AssertionError("Expected ApiError for invalid JSON.")
    except ApiError as exc:
        assert "not valid JSON" in str(exc)


def test_context_manager_closes_session() -> None:
    session = FakeSession(FakeResponse(200, {}))
    with _client(session):
        pass
    assert session.closed is True
