"""Delivery executor: one signed HTTP POST per call, no persistence.

The executor turns a payload into request bytes, signs exactly those
bytes and sends them. Network failures and timeouts are raised internally
as TransportError and handed back to the caller as a failed AttemptResult,
so retry bookkeeping stays with the coordinator.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import HttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from courier.exceptions import TransportError, ValidationError
from courier.models import DomainEvent, Operation, Subscription, WebhookPayload, utc_now

from .signature import signature_headers
from .template import render_body_template

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Courier-Webhooks/0.1"

_URL_ADAPTER = TypeAdapter(HttpUrl)

SAMPLE_RECORD = {
    "id": "test-student-123",
    "name": "Test Student",
    "email": "test@example.com",
}


@dataclass(frozen=True)
class AttemptResult:
    """Outcome of a single delivery attempt.

    Attributes:
        ok: True when the endpoint answered 2xx.
        status_code: HTTP status, None when no response was received.
        response_body: Response body truncated to the configured limit.
        error: Description of the failure, None on success.
        duration_ms: Wall time of the attempt.
    """

    ok: bool
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    duration_ms: float = 0.0


def encode_body(data: dict[str, Any]) -> bytes:
    """Compact JSON encoding used for every request body."""
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class DeliveryExecutor:
    """Sends webhook payloads to subscriber endpoints.

    Example:
        ```python
        executor = DeliveryExecutor(timeout_seconds=30)
        payload = executor.build_payload(event, "student.created", "org_1")
        result = await executor.attempt(subscription, payload, attempt_number=1)
        ```
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        response_body_limit: int = 4096,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            timeout_seconds: Hard timeout of each POST.
            response_body_limit: Characters of response body kept.
            user_agent: User-Agent header value.
            transport: Optional httpx transport, e.g. a MockTransport in tests.
        """
        self._timeout = timeout_seconds
        self._body_limit = response_body_limit
        self._user_agent = user_agent
        self._transport = transport

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    @staticmethod
    def build_payload(event: DomainEvent, event_name: str, tenant_id: str) -> WebhookPayload:
        """Wire payload for ``event`` as matched under ``event_name``."""
        return WebhookPayload.from_event(event, event_name, tenant_id)

    @staticmethod
    def render_body(subscription: Subscription, payload: WebhookPayload) -> bytes:
        """Request body bytes: the payload, or the subscription's template.

        Raises:
            ConfigurationError: If the stored template is malformed.
        """
        wire = payload.to_wire()
        if subscription.body_template:
            return encode_body(render_body_template(subscription.body_template, wire))
        return encode_body(wire)

    def build_headers(
        self,
        subscription: Subscription,
        payload: WebhookPayload,
        body: bytes,
        attempt_number: int,
        delivery_id: str | None = None,
    ) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            "X-Event-Type": payload.event,
            "X-Organization-ID": payload.organization_id,
            "X-Delivery-Attempt": str(attempt_number),
        }
        if delivery_id:
            headers["X-Delivery-Id"] = delivery_id
        headers.update(signature_headers(body, subscription.secret))
        if subscription.bearer_token:
            headers["Authorization"] = f"Bearer {subscription.bearer_token}"
        return headers

    def _truncate(self, text: str | None) -> str | None:
        if not text:
            return None
        return text[: self._body_limit]

    async def _post(
        self,
        client: httpx.AsyncClient,
        url: str,
        body: bytes,
        headers: dict[str, str],
    ) -> tuple[int, str]:
        """POST the body and read the response text up to the body limit.

        The rest of the response is never read.
        """
        async with client.stream("POST", url, content=body, headers=headers) as response:
            text = ""
            async for chunk in response.aiter_text():
                text += chunk
                if len(text) >= self._body_limit:
                    break
            return response.status_code, text

    async def _send(
        self,
        url: str,
        body: bytes,
        headers: dict[str, str],
        timeout: float,
    ) -> tuple[int, str]:
        """Send the request, raising TransportError when no full answer arrives in time."""
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(timeout),
                transport=self._transport,
                follow_redirects=False,
            ) as client:
                return await asyncio.wait_for(
                    self._post(client, url, body, headers),
                    timeout=timeout,
                )
        except (TimeoutError, httpx.TimeoutException) as e:
            raise TransportError(f"Request timed out after {timeout:g}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e

    async def attempt(
        self,
        subscription: Subscription,
        payload: WebhookPayload,
        attempt_number: int = 1,
        delivery_id: str | None = None,
        timeout_seconds: float | None = None,
    ) -> AttemptResult:
        """Make one delivery attempt.

        Args:
            subscription: Target subscription.
            payload: Wire payload to send.
            attempt_number: 1-based attempt number, sent as a header.
            delivery_id: Activity log entry id, sent as a header.
            timeout_seconds: Shorter budget for this attempt, capped at the
                executor's hard timeout.

        Returns:
            The attempt outcome. Transport failures never raise.

        Raises:
            ConfigurationError: If the subscription's body template is malformed.
        """
        body = self.render_body(subscription, payload)
        headers = self.build_headers(subscription, payload, body, attempt_number, delivery_id)
        timeout = min(timeout_seconds or self._timeout, self._timeout)
        url = str(subscription.url)

        started = time.perf_counter()
        try:
            status_code, text = await self._send(url, body, headers, timeout)
        except TransportError as e:
            duration_ms = (time.perf_counter() - started) * 1000
            logger.warning(
                "Delivery to %s failed (attempt %d): %s", url, attempt_number, e.message
            )
            return AttemptResult(ok=False, error=e.message, duration_ms=duration_ms)

        duration_ms = (time.perf_counter() - started) * 1000
        response_body = self._truncate(text)

        if 200 <= status_code < 300:
            logger.info(
                "Delivered %s to %s (status %d, attempt %d)",
                payload.event,
                url,
                status_code,
                attempt_number,
            )
            return AttemptResult(
                ok=True,
                status_code=status_code,
                response_body=response_body,
                duration_ms=duration_ms,
            )

        logger.warning(
            "Endpoint %s rejected %s (status %d, attempt %d)",
            url,
            payload.event,
            status_code,
            attempt_number,
        )
        return AttemptResult(
            ok=False,
            status_code=status_code,
            response_body=response_body,
            error=f"HTTP {status_code}",
            duration_ms=duration_ms,
        )

    async def send_test(self, subscription: Subscription, url: str | None = None) -> AttemptResult:
        """Send a sample ``students``/``insert`` payload without logging it.

        Args:
            subscription: Subscription whose secret, token and template apply.
            url: Optional override of the subscription's URL.
        """
        event = DomainEvent(
            tenant_id=subscription.tenant_id,
            resource="students",
            operation=Operation.INSERT,
            record={**SAMPLE_RECORD, "created_at": utc_now().isoformat()},
        )
        name = event.candidate_event_names()[0]
        payload = self.build_payload(event, name, subscription.tenant_id)
        target = subscription
        if url is not None:
            try:
                override = _URL_ADAPTER.validate_python(url)
            except PydanticValidationError as e:
                raise ValidationError("url", "must be an absolute http(s) URL") from e
            target = subscription.model_copy(update={"url": override})
        return await self.attempt(target, payload, attempt_number=1)
