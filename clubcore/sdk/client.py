from __future__ import annotations

import logging
import time
from typing import Any, Callable
from uuid import uuid4

import httpx


logger = logging.getLogger(__name__)

_RETRY_STATUSES = frozenset({429, 503})
_MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class ClubCoreApiError(Exception):
    """Non-2xx response from the API, carrying the error envelope."""

    def __init__(self, status_code: int, code: str, message: str, payload: Any = None) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.payload = payload


def _retry_after_seconds(headers: httpx.Headers | None) -> float | None:
    if not headers:
        return None
    retry_after = headers.get("Retry-After")
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            return None
    return None


class ClubCoreClient:
    """Thin HTTP client that retries throttled calls safely.

    Every mutation carries one Idempotency-Key reused across its retries, so a
    retried submission replays the original outcome instead of running twice.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        user_id: str | None = None,
        role: str | None = None,
        correlation_id: str | None = None,
        max_retries: int = 2,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = httpx.Client(base_url=base_url, transport=transport)
        self._user_id = user_id
        self._role = role
        self.correlation_id = correlation_id or str(uuid4())
        self._max_retries = max_retries
        self._sleep = sleep

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ClubCoreClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _headers(self, idempotency_key: str | None) -> dict[str, str]:
        headers = {"X-Correlation-ID": self.correlation_id}
        if self._user_id:
            headers["X-User-Id"] = self._user_id
        if self._role:
            headers["X-User-Role"] = self._role
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        idempotency_key: str | None = None,
    ) -> httpx.Response:
        method = method.upper()
        if method in _MUTATION_METHODS and idempotency_key is None:
            idempotency_key = str(uuid4())
        headers = self._headers(idempotency_key)
        attempt = 0
        while True:
            response = self._client.request(method, path, json=json, headers=headers)
            if response.status_code not in _RETRY_STATUSES or attempt >= self._max_retries:
                return response
            retry_after = _retry_after_seconds(response.headers)
            if retry_after is None:
                retry_after = min(2.0, 0.25 * (2 ** attempt))
            logger.info("retrying status=%s path=%s after=%.2fs", response.status_code, path, retry_after)
            self._sleep(retry_after)
            attempt += 1

    def _data(self, response: httpx.Response) -> Any:
        payload = response.json()
        if response.is_success:
            return payload.get("data")
        error = payload.get("error") or {}
        raise ClubCoreApiError(
            response.status_code,
            str(error.get("code") or "UNKNOWN_ERROR"),
            str(error.get("message") or "Request failed"),
            payload,
        )

    def health(self) -> dict[str, Any]:
        return self._data(self.request("GET", "/v1/health"))

    def submit_membership_application(
        self,
        *,
        full_name: str,
        email: str,
        sport: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        body = {"full_name": full_name, "email": email, "sport": sport}
        response = self.request(
            "POST",
            "/v1/membership/applications",
            json=body,
            idempotency_key=idempotency_key,
        )
        return self._data(response)

    def rate_limit_status(self, client_id: str) -> dict[str, Any]:
        return self._data(self.request("GET", f"/v1/ops/rate-limits/{client_id}"))

    def reset_rate_limit(self, client_id: str) -> dict[str, Any]:
        return self._data(self.request("DELETE", f"/v1/ops/rate-limits/{client_id}"))


def create_client(
    base_url: str = "http://localhost:8000",
    *,
    user_id: str | None = None,
    role: str | None = None,
    max_retries: int = 2,
) -> ClubCoreClient:
    return ClubCoreClient(base_url, user_id=user_id, role=role, max_retries=max_retries)
