from __future__ import annotations

import httpx
import pytest

from clubcore.sdk.client import ClubCoreApiError, ClubCoreClient


def _throttled(retry_after: str | None = "3") -> httpx.Response:
    headers = {"Retry-After": retry_after} if retry_after else {}
    return httpx.Response(
        429,
        headers=headers,
        json={"error": {"code": "RATE_LIMITED", "message": "Too many requests."}},
    )


def _created() -> httpx.Response:
    return httpx.Response(
        201,
        json={"data": {"application_id": "app-1", "status": "submitted"}, "meta": {"cached": False}},
    )


def test_throttled_submission_is_retried_with_the_same_key() -> None:
    seen: list[httpx.Request] = []
    responses = iter([_throttled("3"), _created()])

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return next(responses)

    sleeps: list[float] = []
    client = ClubCoreClient(
        "http://clubcore.test",
        user_id="member-1",
        transport=httpx.MockTransport(handler),
        sleep=sleeps.append,
    )
    with client:
        data = client.submit_membership_application(full_name="Ann Lee", email="ann@example.com")

    assert data["application_id"] == "app-1"
    assert sleeps == [3.0]
    assert len(seen) == 2
    keys = {request.headers["Idempotency-Key"] for request in seen}
    assert len(keys) == 1
    assert all(request.headers["X-User-Id"] == "member-1" for request in seen)
    assert all(request.headers["X-Correlation-ID"] == client.correlation_id for request in seen)


def test_explicit_idempotency_key_is_forwarded() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _created()

    with ClubCoreClient("http://clubcore.test", transport=httpx.MockTransport(handler)) as client:
        client.submit_membership_application(
            full_name="Ann Lee",
            email="ann@example.com",
            idempotency_key="signup_form_0000000042",
        )

    assert seen[0].headers["Idempotency-Key"] == "signup_form_0000000042"
    assert "X-User-Id" not in seen[0].headers


def test_reads_do_not_send_idempotency_keys() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": {"status": "ok"}})

    with ClubCoreClient("http://clubcore.test", transport=httpx.MockTransport(handler)) as client:
        assert client.health() == {"status": "ok"}

    assert seen[0].url.path == "/v1/health"
    assert "Idempotency-Key" not in seen[0].headers


def test_backoff_is_used_without_retry_after() -> None:
    responses = iter([_throttled(None), _throttled(None), _created()])
    sleeps: list[float] = []
    client = ClubCoreClient(
        "http://clubcore.test",
        transport=httpx.MockTransport(lambda request: next(responses)),
        sleep=sleeps.append,
    )
    with client:
        client.submit_membership_application(full_name="Ann Lee", email="ann@example.com")

    assert sleeps == [0.25, 0.5]


def test_exhausted_retries_raise_api_error() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return _throttled("1")

    sleeps: list[float] = []
    client = ClubCoreClient(
        "http://clubcore.test",
        max_retries=2,
        transport=httpx.MockTransport(handler),
        sleep=sleeps.append,
    )
    with client, pytest.raises(ClubCoreApiError) as exc_info:
        client.submit_membership_application(full_name="Ann Lee", email="ann@example.com")

    assert calls == 3
    assert sleeps == [1.0, 1.0]
    assert exc_info.value.status_code == 429
    assert exc_info.value.code == "RATE_LIMITED"


def test_ops_calls_carry_the_role_header() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": {"client_id": "203.0.113.5", "reset": True}})

    client = ClubCoreClient(
        "http://clubcore.test",
        user_id="admin-1",
        role="admin",
        transport=httpx.MockTransport(handler),
    )
    with client:
        assert client.reset_rate_limit("203.0.113.5") == {"client_id": "203.0.113.5", "reset": True}

    assert seen[0].method == "DELETE"
    assert seen[0].headers["X-User-Role"] == "admin"
