"""HTTP client that hands projected records to the downstream CRM/billing
system, with retry logic and timeout handling.

The sink receives one JSON document per completed session::

    {"sessionId": "...", "flowId": "...", "record": {...}}

An ``Idempotency-Key`` header carrying the session id lets the receiver drop
duplicate deliveries when a retry races a slow success.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0


class RecordSinkError(Exception):
    """Raised when delivering a record fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RecordSinkClient:
    """Thin wrapper around the record sink endpoint with automatic retries."""

    def __init__(
        self,
        url: str,
        token: str | None = None,
        *,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        backoff_seconds: float = INITIAL_BACKOFF_SECONDS,
    ):
        self._url = url
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(headers=headers, timeout=timeout)
        self._backoff_seconds = backoff_seconds

    def close(self) -> None:
        self._client.close()

    def _post(self, payload: dict[str, Any], idempotency_key: str) -> dict[str, Any]:
        """POST with exponential-backoff retries.  4xx responses are not retried."""
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.request(
                    "POST",
                    self._url,
                    json=payload,
                    headers={"Idempotency-Key": idempotency_key},
                )
                if response.status_code >= 500:
                    raise RecordSinkError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise RecordSinkError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                return response.json() if response.content else {}

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Record sink attempt %d/%d failed (%s). Retrying…",
                    attempt, MAX_RETRIES, type(exc).__name__,
                )
            except RecordSinkError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Record sink server error on attempt %d/%d. Retrying…",
                        attempt, MAX_RETRIES,
                    )
                else:
                    raise

            if attempt < MAX_RETRIES:
                time.sleep(self._backoff_seconds * (2 ** (attempt - 1)))

        raise RecordSinkError(
            f"Record delivery failed after {MAX_RETRIES} retries: {last_error}"
        )

    def deliver(self, record: dict[str, Any], *, session_id: str, flow_id: str) -> dict[str, Any]:
        """Deliver one projected record.  Returns the sink's JSON response."""
        result = self._post(
            {"sessionId": session_id, "flowId": flow_id, "record": record},
            idempotency_key=session_id,
        )
        logger.info("Delivered record for session %s (flow %s)", session_id, flow_id)
        return result
