"""HTTP API: outbound sends, task management and transport control."""

import logging
import secrets
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from replytrack.core.config import constants, settings
from replytrack.core.errors import ApiError, ErrorCode, ReplytrackError, to_error_response
from replytrack.core.rate_limiter import rate_limiter
from replytrack.domain.create_models import PersistentCommandCreate
from replytrack.interface.transport import MessagingTransport, TransportStatus
from replytrack.services.correlation_service import ResponseTaskService
from replytrack.services.outbound_service import send_any


logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50

# Transport state -> (status code, error) for routes that need a live session
TRANSPORT_GUARD_ERRORS = {
    TransportStatus.IDLE: (409, ErrorCode.BOT_NOT_STARTED),
    TransportStatus.CONNECTING: (428, ErrorCode.QR_REQUIRED),
    TransportStatus.LOGGED_OUT: (401, ErrorCode.LOGGED_OUT),
}


def _request_token(request: Request) -> str | None:
    authorization = request.headers.get("authorization")
    if authorization:
        return authorization.removeprefix("Bearer ").strip()
    return request.headers.get("x-auth-token")


async def require_api_token(request: Request) -> None:
    """Reject requests that do not carry the configured AUTH_TOKEN.

    Raises:
        ApiError: 500 when no token is configured, 401 on a missing or wrong token
        HTTPException: 429 after too many failed attempts from one client
    """
    if not settings.auth_token:
        raise ApiError(ErrorCode.AUTH_TOKEN_NOT_DEFINED, 500)

    token = _request_token(request)
    if token and secrets.compare_digest(token, settings.auth_token):
        return

    client_id = request.client.host if request.client else "unknown"
    logger.warning("api_auth_failed", extra={"path": request.url.path, "client": client_id})
    await rate_limiter.check_auth_failure_limit(client_id)
    raise ApiError(ErrorCode.UNAUTHORIZED, 401)


def get_task_service(request: Request) -> ResponseTaskService:
    return request.app.state.task_service


def get_transport(request: Request) -> MessagingTransport:
    return request.app.state.transport


def require_connected_transport(transport: MessagingTransport = Depends(get_transport)) -> MessagingTransport:
    """Only let the request through while the messaging session is connected."""
    status = transport.get_status()
    if status == TransportStatus.CONNECTED:
        return transport
    status_code, code = TRANSPORT_GUARD_ERRORS.get(status, (503, ErrorCode.BOT_OFFLINE))
    raise ApiError(code, status_code)


router = APIRouter(prefix="/api", tags=["api"], dependencies=[Depends(require_api_token)])


@router.post("/send")
async def send_message(
    request: Request,
    transport: MessagingTransport = Depends(require_connected_transport),
    service: ResponseTaskService = Depends(get_task_service),
) -> dict[str, Any]:
    """Send any supported message; `awaitResponse` registers a response task for it."""
    try:
        body = await request.json()
    except ValueError as e:
        raise ApiError(ErrorCode.INVALID_PAYLOAD, 400, "Invalid JSON payload") from e

    result = await send_any(transport, body)
    task = await service.create_from_send(body, result)
    if task is None:
        return result
    return {
        **result,
        "awaitResponse": {"taskId": task.id, "status": task.status, "expiresAt": task.expires_at},
    }


@router.post("/tasks/permanent")
async def create_permanent_task(
    body: PersistentCommandCreate,
    service: ResponseTaskService = Depends(get_task_service),
) -> dict[str, Any]:
    if not body.to:
        raise ApiError(ErrorCode.TO_REQUIRED, 400)
    task = await service.create_persistent_command(body.to, body.expected_entries(), body.action, body.notes)
    return {"status": "created", "task": task.to_api()}


@router.get("/tasks")
async def list_tasks(
    status: str | None = None,
    to: str | None = None,
    limit: int = Query(default=DEFAULT_LIST_LIMIT),
    service: ResponseTaskService = Depends(get_task_service),
) -> dict[str, Any]:
    limit = min(max(limit, 1), constants.MAX_LIST_LIMIT)
    items = await service.list_tasks(status=status, to=to, limit=limit)
    return {"total": len(items), "items": [task.to_api() for task in items]}


@router.get("/tasks/stats")
async def task_stats(service: ResponseTaskService = Depends(get_task_service)) -> dict[str, Any]:
    return await service.stats()


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, service: ResponseTaskService = Depends(get_task_service)) -> dict[str, Any]:
    task = await service.get(task_id)
    if task is None:
        raise ApiError(ErrorCode.TASK_NOT_FOUND, 404)
    return task.to_api()


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, service: ResponseTaskService = Depends(get_task_service)) -> dict[str, Any]:
    task = await service.cancel(task_id)
    if task is None:
        raise ApiError(ErrorCode.TASK_NOT_FOUND, 404)
    return task.to_api()


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: str, service: ResponseTaskService = Depends(get_task_service)) -> dict[str, str]:
    if not await service.remove(task_id):
        raise ApiError(ErrorCode.TASK_NOT_FOUND, 404)
    return {"status": "deleted"}


# Transport control


@router.post("/transport/start")
async def start_transport(transport: MessagingTransport = Depends(get_transport)) -> dict[str, str]:
    await transport.start()
    return {"status": "starting"}


@router.post("/transport/restart")
async def restart_transport(
    transport: MessagingTransport = Depends(require_connected_transport),
) -> dict[str, str]:
    await transport.restart()
    return {"status": "restarting"}


@router.post("/transport/stop")
async def stop_transport(transport: MessagingTransport = Depends(require_connected_transport)) -> dict[str, str]:
    await transport.stop()
    return {"status": "stopped"}


@router.get("/transport/status")
async def transport_status(transport: MessagingTransport = Depends(get_transport)) -> dict[str, str]:
    return {"status": str(transport.get_status())}


async def replytrack_error_handler(_request: Request, exc: ReplytrackError) -> JSONResponse:
    """Render engine and API errors as `{"error": CODE, "message"?: ...}`."""
    body = to_error_response(exc).model_dump(exclude_none=True)
    return JSONResponse(content=body, status_code=exc.status_code)
