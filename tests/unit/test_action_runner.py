"""Tests for task action execution."""

import json
from typing import Any

import httpx
import pytest

from replytrack.core.errors import ErrorCode, SendError, TaskValidationError
from replytrack.domain.task import NoOpAction, SendAction, Task, WebhookAction, parse_action
from replytrack.services.action_runner import run_action, run_action_with_retries
from tests.unit.mocks import FakeTransport


CONTEXT = {"taskId": "t1", "to": "5511900000000@s.whatsapp.net"}


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.unit
class TestParseAction:
    def test_send_requires_payload(self) -> None:
        with pytest.raises(TaskValidationError) as exc_info:
            parse_action({"mode": "send", "payload": {}})
        assert exc_info.value.code == ErrorCode.ACTION_PAYLOAD_REQUIRED

    def test_url_means_webhook(self) -> None:
        action = parse_action({"url": "https://hooks.example/x", "method": "put", "headers": {"X-Id": 7}})

        assert isinstance(action, WebhookAction)
        assert action.method == "PUT"
        assert action.headers == {"X-Id": "7"}

    def test_none_mode(self) -> None:
        assert isinstance(parse_action({"mode": "none"}), NoOpAction)

    def test_unknown_shape_is_invalid(self) -> None:
        with pytest.raises(TaskValidationError) as exc_info:
            parse_action({"mode": "sms"})
        assert exc_info.value.code == ErrorCode.INVALID_ACTION

    @pytest.mark.parametrize(
        "raw",
        [
            {"url": "https://hooks.example/x", "timeoutMs": "soon"},
            {"url": 123},
            {"mode": "send", "payload": {"text": "hi"}, "to": 123},
        ],
    )
    def test_malformed_fields_are_invalid(self, raw: dict) -> None:
        with pytest.raises(TaskValidationError) as exc_info:
            parse_action(raw)
        assert exc_info.value.code == ErrorCode.INVALID_ACTION


@pytest.mark.unit
async def test_no_action_returns_none() -> None:
    assert await run_action(None, CONTEXT, FakeTransport()) is None


@pytest.mark.unit
async def test_noop_action() -> None:
    assert await run_action(NoOpAction(), CONTEXT, FakeTransport()) == {"ok": True, "mode": "none"}


@pytest.mark.unit
async def test_send_defaults_recipient_to_task() -> None:
    transport = FakeTransport()

    result = await run_action(SendAction(payload={"text": "Thanks!"}), CONTEXT, transport)

    assert result is not None
    assert result["ok"] is True
    assert result["createdTaskId"] is None
    assert result["result"]["messageId"] == "MSG1"
    assert transport.sent[0]["jid"] == "5511900000000@s.whatsapp.net"


@pytest.mark.unit
async def test_send_to_explicit_recipient() -> None:
    transport = FakeTransport()

    await run_action(SendAction(payload={"text": "Hi"}, to="5511911111111"), CONTEXT, transport)

    assert transport.sent[0]["jid"] == "5511911111111@s.whatsapp.net"


@pytest.mark.unit
async def test_send_with_await_response_calls_task_factory() -> None:
    calls: list[tuple[dict[str, Any], dict[str, Any], str | None]] = []

    async def on_create_task(body: dict[str, Any], result: dict[str, Any], parent: str | None) -> Task:
        calls.append((body, result, parent))
        return Task(id="child")

    payload = {"text": "Next?", "awaitResponse": {"expected": [{"key": "a"}]}}
    result = await run_action(SendAction(payload=payload), CONTEXT, FakeTransport(), on_create_task)

    assert result is not None
    assert result["createdTaskId"] == "child"
    assert calls[0][2] == "t1"
    assert calls[0][0]["to"] == "5511900000000@s.whatsapp.net"


@pytest.mark.unit
async def test_send_failure_is_reported_not_raised() -> None:
    transport = FakeTransport()
    transport.fail_with = SendError(ErrorCode.SEND_FAILED)

    result = await run_action(SendAction(payload={"text": "Hi"}), CONTEXT, transport)

    assert result == {"ok": False, "mode": "send", "error": ErrorCode.SEND_FAILED}


@pytest.mark.unit
async def test_webhook_posts_body_with_task_context() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, text="x" * 3000)

    action = WebhookAction(url="https://hooks.example/x", headers={"X-Token": "abc"}, body={"source": "menu"})
    async with mock_client(handler) as client:
        result = await run_action(action, CONTEXT, FakeTransport(), http_client=client)

    assert result is not None
    assert result["ok"] is True
    assert result["status"] == 201
    assert len(result["body"]) == 2000
    request = seen[0]
    assert request.method == "POST"
    assert request.headers["X-Token"] == "abc"
    assert request.headers["Content-Type"] == "application/json"
    assert json.loads(request.content) == {"source": "menu", "_taskContext": CONTEXT}


@pytest.mark.unit
async def test_webhook_get_sends_no_body() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    async with mock_client(handler) as client:
        await run_action(WebhookAction(url="https://hooks.example/x", method="GET"), CONTEXT, FakeTransport(), http_client=client)

    assert seen[0].content == b""


@pytest.mark.unit
async def test_webhook_error_status_is_not_ok() -> None:
    async with mock_client(lambda request: httpx.Response(502, text="bad gateway")) as client:
        result = await run_action(WebhookAction(url="https://hooks.example/x"), CONTEXT, FakeTransport(), http_client=client)

    assert result == {"ok": False, "status": 502, "body": "bad gateway"}


@pytest.mark.unit
async def test_webhook_network_error_is_reported() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with mock_client(handler) as client:
        result = await run_action(WebhookAction(url="https://hooks.example/x"), CONTEXT, FakeTransport(), http_client=client)

    assert result is not None
    assert result["ok"] is False
    assert result["mode"] == "webhook"
    assert "connection refused" in result["error"]


@pytest.mark.unit
class TestRetries:
    async def test_stops_at_first_success(self) -> None:
        statuses = iter([500, 200, 200])
        async with mock_client(lambda request: httpx.Response(next(statuses))) as client:
            result = await run_action_with_retries(
                WebhookAction(url="https://hooks.example/x"),
                CONTEXT,
                FakeTransport(),
                attempts=3,
                delay_ms=0,
                http_client=client,
            )

        assert result["ok"] is True
        assert result["attemptsUsed"] == 2

    async def test_reports_last_failure_after_budget(self) -> None:
        transport = FakeTransport()
        transport.fail_with = SendError(ErrorCode.SEND_FAILED)

        result = await run_action_with_retries(
            SendAction(payload={"text": "Hi"}), CONTEXT, transport, attempts=2, delay_ms=0
        )

        assert result == {"ok": False, "mode": "send", "error": ErrorCode.SEND_FAILED, "attemptsUsed": 2}

    async def test_non_positive_budget_runs_once(self) -> None:
        result = await run_action_with_retries(NoOpAction(), CONTEXT, FakeTransport(), attempts=0, delay_ms=0)

        assert result == {"ok": True, "mode": "none", "attemptsUsed": 1}
