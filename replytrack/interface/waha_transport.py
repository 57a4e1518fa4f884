"""Messaging transport backed by the WAHA HTTP API."""

import asyncio
import json
import logging
from typing import Any

import httpx

from replytrack.core.config import constants, settings
from replytrack.core.errors import ErrorCode, SendError
from replytrack.core.jid import to_waha_chat_id
from replytrack.interface.message_parser import short_message_id
from replytrack.interface.transport import InboundHandler, SendResult, TransportStatus


logger = logging.getLogger(__name__)

# HTTP status code constants for error handling
HTTP_CLIENT_ERROR_START = 400
HTTP_CLIENT_ERROR_END = 500

WAHA_SESSION_STATUS = {
    "STARTING": TransportStatus.CONNECTING,
    "SCAN_QR_CODE": TransportStatus.CONNECTING,
    "WORKING": TransportStatus.CONNECTED,
    "STOPPED": TransportStatus.CLOSED,
    "FAILED": TransportStatus.CLOSED,
}

MEDIA_ENDPOINTS = {
    "image": "/api/sendImage",
    "video": "/api/sendVideo",
    "audio": "/api/sendVoice",
    "document": "/api/sendFile",
}


def _extract_message_id(data: object) -> str | None:
    """Extract the message id from a WAHA send response.

    WAHA returns `{"id": ...}` where id is a string or an object carrying
    `_serialized`; some engines nest the sent message under `key`.
    """
    if not isinstance(data, dict):
        return None
    raw_id = data.get("id")
    if raw_id is None and isinstance(data.get("key"), dict):
        raw_id = data["key"].get("id")
    return short_message_id(raw_id)


def _media_file(media: object, mimetype: str | None) -> dict[str, Any]:
    if isinstance(media, dict):
        file = dict(media)
    else:
        file = {"url": str(media)}
    if mimetype and "mimetype" not in file:
        file["mimetype"] = mimetype
    return file


def _reply_buttons(content: dict[str, Any]) -> list[dict[str, Any]]:
    buttons: list[dict[str, Any]] = []
    for button in content.get("buttons") or []:
        if not isinstance(button, dict):
            continue
        button_text = button.get("buttonText")
        text = button_text.get("displayText") if isinstance(button_text, dict) else button.get("text")
        buttons.append({"type": "reply", "id": button.get("buttonId"), "text": text or ""})

    for item in content.get("interactiveButtons") or []:
        params = item.get("buttonParamsJson") if isinstance(item, dict) else None
        try:
            parsed = json.loads(params) if params else {}
        except (TypeError, ValueError):
            continue
        if isinstance(parsed, dict) and parsed:
            buttons.append(
                {
                    "type": "reply",
                    "id": parsed.get("id") or parsed.get("selection_id"),
                    "text": parsed.get("display_text") or "",
                }
            )
    return buttons


def build_waha_request(
    chat_id: str,
    content: dict[str, Any],
    options: dict[str, Any],
    *,
    session: str,
) -> tuple[str, dict[str, Any]]:
    """Translate Baileys-style message content into a WAHA endpoint and body.

    Raises:
        SendError: UNSUPPORTED_CONTENT for content WAHA cannot send
    """
    body: dict[str, Any] = {"session": session, "chatId": chat_id}
    quoted = options.get("quoted")
    if isinstance(quoted, dict):
        quoted = (quoted.get("key") or {}).get("id") if isinstance(quoted.get("key"), dict) else quoted.get("id")
    if quoted:
        body["reply_to"] = quoted
    if content.get("mentions"):
        body["mentions"] = [to_waha_chat_id(jid) for jid in content["mentions"]]

    for media_type, endpoint in MEDIA_ENDPOINTS.items():
        if content.get(media_type):
            body["file"] = _media_file(content[media_type], content.get("mimetype"))
            if content.get("caption"):
                body["caption"] = content["caption"]
            return endpoint, body

    if content.get("buttons") or content.get("interactiveButtons"):
        body.update(
            {
                "header": content.get("title") or "",
                "body": content.get("text") or content.get("caption") or "",
                "footer": content.get("footer") or "",
                "buttons": _reply_buttons(content),
            }
        )
        return "/api/sendButtons", body

    if content.get("sections"):
        body["message"] = {
            "title": content.get("title") or "",
            "description": content.get("text") or "",
            "footer": content.get("footer") or "",
            "button": content.get("buttonText") or "",
            "sections": [
                {
                    "title": section.get("title") or "",
                    "rows": [
                        {"title": row.get("title") or "", "rowId": row.get("rowId"), "description": row.get("description")}
                        for row in section.get("rows") or []
                        if isinstance(row, dict)
                    ],
                }
                for section in content["sections"]
                if isinstance(section, dict)
            ],
        }
        return "/api/sendList", body

    if isinstance(content.get("poll"), dict):
        poll = content["poll"]
        body["poll"] = {
            "name": poll.get("name") or "",
            "options": list(poll.get("values") or []),
            "multipleAnswers": (poll.get("selectableCount") or 1) != 1,
        }
        return "/api/sendPoll", body

    if isinstance(content.get("location"), dict):
        location = content["location"]
        body.update(
            {
                "latitude": location.get("degreesLatitude"),
                "longitude": location.get("degreesLongitude"),
                "title": location.get("name") or "",
            }
        )
        return "/api/sendLocation", body

    if isinstance(content.get("text"), str):
        body["text"] = content["text"]
        return "/api/sendText", body

    raise SendError(ErrorCode.UNSUPPORTED_CONTENT)


class WahaTransport:
    """WAHA session control, outbound sends and inbound handler fan-out.

    Inbound events reach the transport through the WAHA webhook; `emit`
    hands a messages-upsert batch to every subscribed handler.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        session: str | None = None,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self.session = session or settings.waha_session
        headers = {"Content-Type": "application/json"}
        if api_key or settings.waha_api_key:
            headers["X-Api-Key"] = api_key or settings.waha_api_key or ""
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.waha_base_url,
            headers=headers,
            timeout=constants.API_TIMEOUT_SECONDS,
        )
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._status = TransportStatus.IDLE
        self._handlers: list[InboundHandler] = []

    # Session control

    async def _session_call(self, action: str) -> None:
        response = await self._client.post(f"/api/sessions/{self.session}/{action}")
        response.raise_for_status()

    async def start(self) -> None:
        self._status = TransportStatus.CONNECTING
        try:
            await self._session_call("start")
        except httpx.HTTPStatusError as e:
            # WAHA answers 422 when the session is already running
            if e.response.status_code != 422:
                self._status = TransportStatus.CLOSED
                raise
        except httpx.HTTPError:
            self._status = TransportStatus.CLOSED
            raise
        await self.refresh_status()
        logger.info("WAHA session started", extra={"session": self.session, "status": str(self._status)})

    async def stop(self) -> None:
        try:
            await self._session_call("stop")
        finally:
            self._status = TransportStatus.CLOSED
        logger.info("WAHA session stopped", extra={"session": self.session})

    async def restart(self) -> None:
        self._status = TransportStatus.CONNECTING
        await self._session_call("restart")
        await self.refresh_status()
        logger.info("WAHA session restarted", extra={"session": self.session})

    async def refresh_status(self) -> TransportStatus:
        """Read the session state from WAHA. Unreachable WAHA keeps the last known state."""
        try:
            response = await self._client.get(f"/api/sessions/{self.session}")
            response.raise_for_status()
            waha_status = str(response.json().get("status") or "").upper()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Failed to read WAHA session status", extra={"error": str(e)})
            return self._status

        if waha_status == "STOPPED" and self._status == TransportStatus.IDLE:
            return self._status
        self._status = WAHA_SESSION_STATUS.get(waha_status, self._status)
        return self._status

    def get_status(self) -> TransportStatus:
        return self._status

    def get_socket(self) -> httpx.AsyncClient | None:
        """The HTTP client used to talk to WAHA, once the session has been started."""
        if self._status in (TransportStatus.IDLE, TransportStatus.LOGGED_OUT):
            return None
        return self._client

    async def close(self) -> None:
        await self._client.aclose()

    # Inbound

    def subscribe(self, handler: InboundHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: InboundHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def emit(self, event: dict[str, Any]) -> None:
        """Deliver one messages-upsert batch to every subscribed handler."""
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception:
                logger.exception("Inbound handler failed")

    # Outbound

    async def send(self, jid: str, content: dict[str, Any], options: dict[str, Any] | None = None) -> SendResult:
        """Send one message through WAHA with retry on server errors.

        Raises:
            SendError: UNSUPPORTED_CONTENT or SEND_FAILED
        """
        endpoint, body = build_waha_request(to_waha_chat_id(jid), content, options or {}, session=self.session)

        last_error = "Max retries exceeded"
        for attempt in range(self._max_retries):
            try:
                response = await self._client.post(endpoint, json=body)

                if response.is_success:
                    return SendResult(message_id=_extract_message_id(response.json()))

                if HTTP_CLIENT_ERROR_START <= response.status_code < HTTP_CLIENT_ERROR_END:
                    raise SendError(ErrorCode.SEND_FAILED, f"Client error: {response.text}")

                last_error = f"Server error: {response.status_code}"
            except httpx.HTTPError as e:
                last_error = f"Failed after retries: {e!s}"

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_delay * (2**attempt))

        logger.error("WAHA send failed", extra={"endpoint": endpoint, "chat_id": body["chatId"], "error": last_error})
        raise SendError(ErrorCode.SEND_FAILED, last_error)
