"""Tests for the delivery executor."""

import asyncio
import json
from datetime import UTC, datetime

import httpx
import pytest
from conftest import RecordingEndpoint

from courier.exceptions import ConfigurationError, ValidationError
from courier.models import Operation, Subscription, WebhookPayload
from courier.webhooks import DeliveryExecutor, verify
from courier.webhooks.executor import encode_body

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)
URL = "https://crm.example.com/hooks/students"


@pytest.fixture
def subscription() -> Subscription:
    return Subscription(
        tenant_id="org_1",
        name="CRM sync",
        url=URL,
        resources=["students"],
        events=["insert"],
        secret="shared-secret",
    )


@pytest.fixture
def payload() -> WebhookPayload:
    return WebhookPayload(
        event="student.created",
        table="students",
        operation=Operation.INSERT,
        record={"id": "stu_1", "name": "Ada Lovelace"},
        organization_id="org_1",
        timestamp=NOW,
    )


def make_executor(handler, **kwargs) -> DeliveryExecutor:
    return DeliveryExecutor(transport=httpx.MockTransport(handler), **kwargs)


class TestEncodeBody:
    def test_compact_utf8(self):
        assert encode_body({"name": "Zoë", "n": 1}) == '{"name":"Zoë","n":1}'.encode()


class TestAttempt:
    """Tests for DeliveryExecutor.attempt."""

    async def test_success(self, subscription, payload):
        endpoint = RecordingEndpoint(200, "received")
        executor = DeliveryExecutor(transport=endpoint.transport)

        result = await executor.attempt(subscription, payload, attempt_number=1)

        assert result.ok
        assert result.status_code == 200
        assert result.response_body == "received"
        assert result.error is None
        assert result.duration_ms >= 0
        assert len(endpoint.requests) == 1

        request = endpoint.requests[0]
        assert request.method == "POST"
        assert str(request.url) == URL

    async def test_body_is_wire_payload(self, subscription, payload):
        endpoint = RecordingEndpoint()
        executor = DeliveryExecutor(transport=endpoint.transport)

        await executor.attempt(subscription, payload)

        body = json.loads(endpoint.requests[0].content)
        assert body == payload.to_wire()
        assert "old_record" not in body

    async def test_headers(self, subscription, payload):
        endpoint = RecordingEndpoint()
        executor = DeliveryExecutor(user_agent="Courier-Test/1.0", transport=endpoint.transport)

        await executor.attempt(subscription, payload, attempt_number=2, delivery_id="dlv_abc")

        headers = endpoint.requests[0].headers
        assert headers["Content-Type"] == "application/json"
        assert headers["User-Agent"] == "Courier-Test/1.0"
        assert headers["X-Event-Type"] == "student.created"
        assert headers["X-Organization-ID"] == "org_1"
        assert headers["X-Delivery-Attempt"] == "2"
        assert headers["X-Delivery-Id"] == "dlv_abc"
        assert "Authorization" not in headers

    async def test_signature_covers_exact_body(self, subscription, payload):
        endpoint = RecordingEndpoint()
        executor = DeliveryExecutor(transport=endpoint.transport)

        await executor.attempt(subscription, payload)

        request = endpoint.requests[0]
        signature = request.headers["X-Signature"]
        assert signature.startswith("sha256=")
        assert verify(request.content, "shared-secret", signature)

    async def test_unsigned_subscription_sends_no_signature(self, subscription, payload):
        endpoint = RecordingEndpoint()
        executor = DeliveryExecutor(transport=endpoint.transport)
        unsigned = subscription.model_copy(update={"secret": ""})

        await executor.attempt(unsigned, payload)

        assert "X-Signature" not in endpoint.requests[0].headers

    async def test_bearer_token(self, subscription, payload):
        endpoint = RecordingEndpoint()
        executor = DeliveryExecutor(transport=endpoint.transport)
        with_token = subscription.model_copy(update={"bearer_token": "tok_123"})

        await executor.attempt(with_token, payload)

        assert endpoint.requests[0].headers["Authorization"] == "Bearer tok_123"

    async def test_body_template(self, subscription, payload):
        endpoint = RecordingEndpoint()
        executor = DeliveryExecutor(transport=endpoint.transport)
        templated = subscription.model_copy(
            update={"body_template": '{"text": "{{event}}", "row": "{{record}}"}'}
        )

        await executor.attempt(templated, payload)

        request = endpoint.requests[0]
        assert json.loads(request.content) == {
            "text": "student.created",
            "row": {"id": "stu_1", "name": "Ada Lovelace"},
        }
        # Signed over the rendered body, not the default payload
        assert verify(request.content, "shared-secret", request.headers["X-Signature"])

    async def test_malformed_template_raises(self, subscription, payload):
        endpoint = RecordingEndpoint()
        executor = DeliveryExecutor(transport=endpoint.transport)
        broken = subscription.model_copy(update={"body_template": "{not json"})

        with pytest.raises(ConfigurationError):
            await executor.attempt(broken, payload)
        assert endpoint.requests == []

    @pytest.mark.parametrize("status_code", [301, 400, 404, 500, 503])
    async def test_non_2xx_is_failure(self, subscription, payload, status_code):
        executor = DeliveryExecutor(transport=RecordingEndpoint(status_code, "nope").transport)

        result = await executor.attempt(subscription, payload)

        assert not result.ok
        assert result.status_code == status_code
        assert result.response_body == "nope"
        assert result.error == f"HTTP {status_code}"

    @pytest.mark.parametrize("status_code", [200, 201, 202, 204])
    async def test_any_2xx_is_success(self, subscription, payload, status_code):
        executor = DeliveryExecutor(transport=RecordingEndpoint(status_code, "").transport)

        result = await executor.attempt(subscription, payload)

        assert result.ok
        assert result.response_body is None

    async def test_response_body_truncated(self, subscription, payload):
        executor = DeliveryExecutor(transport=RecordingEndpoint(500, "x" * 5000).transport)

        result = await executor.attempt(subscription, payload)

        assert result.response_body == "x" * 4096

    async def test_custom_body_limit(self, subscription, payload):
        executor = DeliveryExecutor(
            response_body_limit=10, transport=RecordingEndpoint(200, "y" * 50).transport
        )

        result = await executor.attempt(subscription, payload)

        assert result.response_body == "y" * 10

    async def test_endless_response_body_is_not_read_to_the_end(self, subscription, payload):
        chunks_sent = 0

        async def endless():
            nonlocal chunks_sent
            while True:
                chunks_sent += 1
                yield b"z" * 1024

        def flood(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, content=endless())

        executor = make_executor(flood, timeout_seconds=5)
        result = await executor.attempt(subscription, payload)

        assert result.status_code == 500
        assert result.error == "HTTP 500"
        assert result.response_body == "z" * 4096
        assert chunks_sent < 10

    async def test_connection_error(self, subscription, payload):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = await make_executor(refuse).attempt(subscription, payload)

        assert not result.ok
        assert result.status_code is None
        assert "ConnectError" in (result.error or "")

    async def test_timeout(self, subscription, payload):
        async def hang(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200)

        executor = make_executor(hang, timeout_seconds=0.05)
        result = await executor.attempt(subscription, payload)

        assert not result.ok
        assert result.status_code is None
        assert "timed out" in (result.error or "")

    async def test_shorter_attempt_budget(self, subscription, payload):
        async def hang(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200)

        executor = make_executor(hang, timeout_seconds=30)
        result = await executor.attempt(subscription, payload, timeout_seconds=0.05)

        assert not result.ok
        assert "timed out after 0.05s" in (result.error or "")


class TestSendTest:
    """Tests for DeliveryExecutor.send_test."""

    async def test_sends_sample_payload(self, subscription):
        endpoint = RecordingEndpoint()
        executor = DeliveryExecutor(transport=endpoint.transport)

        result = await executor.send_test(subscription)

        assert result.ok
        request = endpoint.requests[0]
        body = json.loads(request.content)
        assert body["event"] == "student.created"
        assert body["table"] == "students"
        assert body["operation"] == "insert"
        assert body["organization_id"] == "org_1"
        assert body["record"]["id"] == "test-student-123"
        assert verify(request.content, "shared-secret", request.headers["X-Signature"])

    async def test_override_url(self, subscription):
        endpoint = RecordingEndpoint()
        executor = DeliveryExecutor(transport=endpoint.transport)

        await executor.send_test(subscription, url="https://staging.example.com/hook")

        assert str(endpoint.requests[0].url) == "https://staging.example.com/hook"

    async def test_invalid_override_url(self, subscription):
        executor = DeliveryExecutor(transport=RecordingEndpoint().transport)

        with pytest.raises(ValidationError) as exc_info:
            await executor.send_test(subscription, url="not a url")
        assert exc_info.value.field == "url"

    async def test_reports_failure(self, subscription):
        executor = DeliveryExecutor(transport=RecordingEndpoint(500, "down").transport)

        result = await executor.send_test(subscription)

        assert not result.ok
        assert result.status_code == 500
