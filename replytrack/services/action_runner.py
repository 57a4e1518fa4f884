"""Execution of task actions: chained sends, webhooks and no-ops."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from replytrack.core.config import constants
from replytrack.core.errors import ErrorCode, ReplytrackError
from replytrack.domain.task import NoOpAction, SendAction, Task, WebhookAction
from replytrack.interface.transport import MessagingTransport
from replytrack.services.outbound_service import send_any


logger = logging.getLogger(__name__)

# (request_body, send_result, parent_task_id) -> created task
OnCreateTask = Callable[[dict[str, Any], dict[str, Any], str | None], Awaitable[Task | None]]

ActionLike = SendAction | WebhookAction | NoOpAction


async def _run_send(
    action: SendAction,
    context: dict[str, Any],
    transport: MessagingTransport,
    on_create_task: OnCreateTask | None,
) -> dict[str, Any]:
    if not action.payload:
        return {"ok": False, "error": ErrorCode.ACTION_PAYLOAD_REQUIRED}

    payload = dict(action.payload)
    payload["to"] = payload.get("to") or action.to or context.get("to")

    try:
        result = await send_any(transport, payload)
        created_task = None
        if on_create_task is not None and payload.get("awaitResponse"):
            created_task = await on_create_task(payload, result, context.get("taskId"))
    except ReplytrackError as e:
        return {"ok": False, "mode": "send", "error": e.code}

    return {
        "ok": True,
        "mode": "send",
        "result": result,
        "createdTaskId": created_task.id if created_task else None,
    }


async def _run_webhook(
    action: WebhookAction,
    context: dict[str, Any],
    http_client: httpx.AsyncClient | None,
) -> dict[str, Any]:
    method = action.method.upper()
    timeout_seconds = (action.timeout_ms or constants.ACTION_TIMEOUT_MS) / 1000
    headers = {"Content-Type": "application/json", **action.headers}
    body = {**(action.body or {}), "_taskContext": context}

    request_kwargs: dict[str, Any] = {"headers": headers, "timeout": timeout_seconds}
    if method != "GET":
        request_kwargs["json"] = body

    try:
        if http_client is not None:
            response = await http_client.request(method, action.url, **request_kwargs)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.request(method, action.url, **request_kwargs)
    except httpx.HTTPError as e:
        logger.warning("Webhook action failed", extra={"url": action.url, "error": str(e)})
        return {"ok": False, "mode": "webhook", "error": str(e) or type(e).__name__}

    return {
        "ok": response.is_success,
        "status": response.status_code,
        "body": response.text[: constants.WEBHOOK_RESPONSE_BODY_LIMIT],
    }


async def run_action(
    action: ActionLike | None,
    context: dict[str, Any],
    transport: MessagingTransport,
    on_create_task: OnCreateTask | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any] | None:
    """Run one action and describe its outcome.

    Returns:
        The outcome (`ok` plus mode-specific fields), or None when there is no action
    """
    match action:
        case None:
            return None
        case SendAction():
            return await _run_send(action, context, transport, on_create_task)
        case WebhookAction():
            return await _run_webhook(action, context, http_client)
        case NoOpAction():
            return {"ok": True, "mode": "none"}
        case _:
            return {"ok": False, "error": ErrorCode.INVALID_ACTION}


async def run_action_with_retries(
    action: ActionLike | None,
    context: dict[str, Any],
    transport: MessagingTransport,
    on_create_task: OnCreateTask | None = None,
    *,
    attempts: int,
    delay_ms: int,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Run an action until it succeeds or the attempt budget is spent.

    The result always carries `attemptsUsed`.
    """
    budget = max(1, attempts)
    last_result: dict[str, Any] | None = None

    for attempt in range(1, budget + 1):
        last_result = await run_action(action, context, transport, on_create_task, http_client=http_client)
        if last_result and last_result.get("ok"):
            return {**last_result, "attemptsUsed": attempt}

        if attempt < budget and delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)

    return {**(last_result or {}), "attemptsUsed": budget}
