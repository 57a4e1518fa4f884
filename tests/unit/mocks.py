"""Test doubles for the messaging transport and inbound message builders."""

from typing import Any

from replytrack.interface.transport import InboundHandler, SendResult, TransportStatus


class FakeTransport:
    """In-memory messaging transport recording every send."""

    def __init__(self, status: TransportStatus = TransportStatus.CONNECTED) -> None:
        self.status = status
        self.sent: list[dict[str, Any]] = []
        self.handlers: list[InboundHandler] = []
        self.fail_with: Exception | None = None
        self._counter = 0

    async def start(self) -> None:
        self.status = TransportStatus.CONNECTED

    async def stop(self) -> None:
        self.status = TransportStatus.CLOSED

    async def restart(self) -> None:
        self.status = TransportStatus.CONNECTED

    def get_status(self) -> TransportStatus:
        return self.status

    def get_socket(self) -> object | None:
        if self.status in (TransportStatus.IDLE, TransportStatus.LOGGED_OUT):
            return None
        return self

    def subscribe(self, handler: InboundHandler) -> None:
        if handler not in self.handlers:
            self.handlers.append(handler)

    def unsubscribe(self, handler: InboundHandler) -> None:
        if handler in self.handlers:
            self.handlers.remove(handler)

    async def emit(self, event: dict[str, Any]) -> None:
        for handler in list(self.handlers):
            await handler(event)

    async def send(self, jid: str, content: dict[str, Any], options: dict[str, Any] | None = None) -> SendResult:
        if self.fail_with is not None:
            raise self.fail_with
        self._counter += 1
        message_id = f"MSG{self._counter}"
        self.sent.append({"jid": jid, "content": content, "options": options or {}, "message_id": message_id})
        return SendResult(message_id=message_id)


def text_message(
    sender: str,
    text: str,
    *,
    reply_to: str | None = None,
    message_id: str = "IN1",
    from_me: bool = False,
    participant: str | None = None,
) -> dict[str, Any]:
    """Build a Baileys-shaped inbound text message."""
    key: dict[str, Any] = {"remoteJid": sender, "id": message_id, "fromMe": from_me}
    if participant:
        key["participant"] = participant
    if reply_to:
        content = {"extendedTextMessage": {"text": text, "contextInfo": {"stanzaId": reply_to}}}
    else:
        content = {"conversation": text}
    return {"key": key, "message": content}


def button_reply(sender: str, button_id: str, display_text: str = "", *, reply_to: str | None = None) -> dict[str, Any]:
    """Build a Baileys-shaped inbound button reply."""
    return {
        "key": {"remoteJid": sender, "id": "IN2", "fromMe": False},
        "message": {
            "buttonsResponseMessage": {
                "selectedButtonId": button_id,
                "selectedDisplayText": display_text,
                "contextInfo": {"stanzaId": reply_to} if reply_to else {},
            }
        },
    }
