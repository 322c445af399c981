"""Async client for the visitor notification webhook (Power Automate HTTP trigger).

Each notification is POSTed as JSON under a bounded timeout and retried with
the shared backoff policy (base delay 2000ms). Delivery is at-least-once:
a retried POST may reach the flow twice, so every payload carries
``meetingId``/``visitorEmail``/``notificationType`` as idempotency hints.

A recent-delivery history is kept in memory for the diagnostics surface.
"""

from __future__ import annotations

import hashlib
import json
from collections import deque
from datetime import datetime, timezone
from urllib.parse import urlparse

import httpx
import structlog

from src.visitor_sync.errors import (
    ConfigurationError,
    NotificationRejectedError,
    NotificationTimeoutError,
    is_transient_status,
)
from src.visitor_sync.schemas import (
    BatchNotificationResult,
    ConnectionTestResult,
    DeliveryResult,
    NotificationHistoryEntry,
    NotificationRequest,
    PerRequestResult,
)
from src.visitor_sync.sync.retry import RetryPolicy, call_with_retry

logger = structlog.get_logger(__name__)

DEFAULT_SOURCE = "LobbyExperienceAddin"
MAX_HISTORY = 100


def response_digest(response: httpx.Response) -> str:
    """Digest of a JSON response body; empty for non-JSON bodies."""
    content_type = response.headers.get("content-type", "")
    if "json" not in content_type:
        return ""
    try:
        data = response.json()
    except ValueError:
        return ""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class NotificationClient:
    """Sends visitor notifications to the configured webhook.

    Args:
        url: Notification endpoint URL.
        timeout_ms: Per-call timeout (default 30000ms).
        retry_policy: Backoff tuning (defaults: 3 retries, 2000ms, x2).
        source: Value of the ``source`` field in every payload.
        transport: Optional httpx transport (tests inject ``httpx.MockTransport``).

    Raises:
        ConfigurationError: If ``url`` is missing or not an http(s) URL.
    """

    SERVICE_NAME = "Power Automate"

    def __init__(
        self,
        url: str,
        timeout_ms: int = 30000,
        retry_policy: RetryPolicy | None = None,
        source: str = DEFAULT_SOURCE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url:
            raise ConfigurationError("Power Automate notification URL is required")
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError("Invalid Power Automate notification URL")

        self._url = url
        self._timeout_ms = timeout_ms
        self._retry = retry_policy or RetryPolicy(base_delay_ms=2000)
        self._source = source
        self._transport = transport
        self._history: deque[NotificationHistoryEntry] = deque(maxlen=MAX_HISTORY)

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the configured timeout."""
        return httpx.AsyncClient(
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            timeout=self._timeout_ms / 1000.0,
            transport=self._transport,
        )

    async def _post(self, payload: dict) -> httpx.Response:
        """POST one payload, mapping transport failures to notification errors."""
        try:
            async with self._client() as client:
                return await client.post(self._url, json=payload)
        except httpx.TimeoutException as exc:
            raise NotificationTimeoutError(self._timeout_ms) from exc
        except httpx.TransportError as exc:
            raise NotificationRejectedError(f"Notification transport error: {exc}") from exc

    # ── Delivery ─────────────────────────────────────────────────────────

    async def notify(self, request: NotificationRequest) -> DeliveryResult:
        """Deliver one notification.

        Returns:
            DeliveryResult with the attempt that succeeded and a digest of the
            JSON response (empty when the endpoint answers with non-JSON).

        Raises:
            NotificationTimeoutError: No response within the timeout on the last attempt.
            NotificationRejectedError: Non-success status after retries.
        """
        payload = request.to_payload(self._source)

        logger.info(
            "notification.sending",
            meeting_id=request.meeting_id,
            visitor_email=request.visitor_email,
            notification_type=request.change_kind.value,
        )

        attempts_made = 0

        async def _send(attempt: int) -> DeliveryResult:
            nonlocal attempts_made
            attempts_made = attempt
            response = await self._post(payload)
            if response.is_error:
                raise NotificationRejectedError(
                    f"HTTP {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                    body=response.text[:500],
                    retriable=is_transient_status(response.status_code),
                )
            return DeliveryResult(
                delivered=True,
                attempt=attempt,
                response_digest=response_digest(response),
            )

        try:
            result = await call_with_retry(self._retry, "notification.notify", _send)
        except (NotificationTimeoutError, NotificationRejectedError) as exc:
            exc.attempts = attempts_made
            self._record(request, delivered=False, error=str(exc))
            raise

        self._record(request, delivered=True)
        logger.info(
            "notification.delivered",
            meeting_id=request.meeting_id,
            visitor_email=request.visitor_email,
            attempt=result.attempt,
        )
        return result

    async def notify_many(self, requests: list[NotificationRequest]) -> BatchNotificationResult:
        """Deliver each request independently.

        One failure never aborts the batch; every request gets a
        PerRequestResult in input order.
        """
        results: list[PerRequestResult] = []

        for request in requests:
            try:
                delivery = await self.notify(request)
            except (NotificationTimeoutError, NotificationRejectedError) as exc:
                logger.error(
                    "notification.failed",
                    meeting_id=request.meeting_id,
                    visitor_email=request.visitor_email,
                    error=str(exc),
                )
                results.append(
                    PerRequestResult(
                        visitor_email=request.visitor_email,
                        delivered=False,
                        attempt=exc.attempts,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                )
                continue

            results.append(
                PerRequestResult(
                    visitor_email=request.visitor_email,
                    delivered=True,
                    attempt=delivery.attempt,
                    response_digest=delivery.response_digest,
                )
            )

        delivered = sum(1 for r in results if r.delivered)
        failed = len(results) - delivered
        logger.info("notification.batch_complete", delivered=delivered, failed=failed)
        return BatchNotificationResult(results=results, delivered=delivered, failed=failed)

    # ── Diagnostics ──────────────────────────────────────────────────────

    async def test_connection(self) -> ConnectionTestResult:
        """POST a marked test payload once, without retries. Never raises."""
        payload = {
            "test": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": self._source,
            "message": "Connection test from visitor sync",
        }
        try:
            response = await self._post(payload)
        except (NotificationTimeoutError, NotificationRejectedError) as exc:
            logger.error("notification.connection_test_failed", error=str(exc))
            return ConnectionTestResult(
                service=self.SERVICE_NAME,
                success=False,
                error=str(exc),
                detail=f"Connection failed: {exc}",
            )

        success = response.is_success
        logger.info(
            "notification.connection_test_complete",
            success=success,
            status_code=response.status_code,
        )
        return ConnectionTestResult(
            service=self.SERVICE_NAME,
            success=success,
            status_code=response.status_code,
            error=None if success else f"HTTP {response.status_code}",
            detail=f"Status: {response.status_code}",
        )

    def _record(self, request: NotificationRequest, delivered: bool, error: str | None = None) -> None:
        self._history.appendleft(
            NotificationHistoryEntry(
                meeting_id=request.meeting_id,
                visitor_email=request.visitor_email,
                notification_type=request.change_kind,
                delivered=delivered,
                error=error,
            )
        )

    def history(self, limit: int = 50) -> list[NotificationHistoryEntry]:
        """Most recent delivery attempts first."""
        return list(self._history)[: max(limit, 0)]

    def clear_history(self) -> None:
        self._history.clear()
        logger.info("notification.history_cleared")
