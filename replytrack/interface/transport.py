"""Messaging transport contract consumed by the correlation engine."""

from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, Protocol

from pydantic import BaseModel, Field


class TransportStatus(StrEnum):
    """Connection state of the messaging transport."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"
    LOGGED_OUT = "logged_out"


class SendResult(BaseModel):
    """Outcome of a transport-level send."""

    message_id: str | None = Field(None, description="Id of the sent message, used to thread replies")


# Receives one messages-upsert event: {"type": "notify", "messages": [...]}
InboundHandler = Callable[[dict[str, Any]], Awaitable[None]]


class MessagingTransport(Protocol):
    """Anything able to send WhatsApp messages and deliver inbound events."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def restart(self) -> None: ...

    def get_status(self) -> TransportStatus: ...

    def get_socket(self) -> object | None: ...

    def subscribe(self, handler: InboundHandler) -> None: ...

    def unsubscribe(self, handler: InboundHandler) -> None: ...

    async def send(self, jid: str, content: dict[str, Any], options: dict[str, Any] | None = None) -> SendResult: ...
