from __future__ import annotations

import base64
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import TYPE_CHECKING, Optional, Union
from urllib import request
from urllib.error import URLError

from backend.sampledesk.models import FileAttachment, ListPrompt, Prompt, TextMessage

if TYPE_CHECKING:
    from backend.sampledesk.observability import MetricsRegistry

logger = logging.getLogger("sampledesk.transport")


class TransportError(Exception):
    pass


class MessageTransport(ABC):
    """Outbound side of the chat channel."""

    @abstractmethod
    def send_text(self, to: str, body: str) -> None:  # pragma: no cover - interface
        ...

    @abstractmethod
    def send_list(self, to: str, prompt: ListPrompt) -> None:  # pragma: no cover - interface
        ...

    @abstractmethod
    def send_file(self, to: str, attachment: FileAttachment) -> None:  # pragma: no cover - interface
        ...


@dataclass(frozen=True)
class SentMessage:
    to: str
    message: Union[TextMessage, ListPrompt, FileAttachment]

    @property
    def text(self) -> str:
        if isinstance(self.message, TextMessage):
            return self.message.body
        if isinstance(self.message, ListPrompt):
            return self.message.description
        return self.message.caption


class InMemoryTransport(MessageTransport):
    """Records every outbound message; used when no gateway is configured."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.sent: list[SentMessage] = []
        self.failing_recipients: set[str] = set()

    def send_text(self, to: str, body: str) -> None:
        self._record(to, TextMessage(body=body))

    def send_list(self, to: str, prompt: ListPrompt) -> None:
        self._record(to, prompt)

    def send_file(self, to: str, attachment: FileAttachment) -> None:
        self._record(to, attachment)

    def messages_to(self, to: str) -> list[SentMessage]:
        with self._lock:
            return [item for item in self.sent if item.to == to]

    def last_to(self, to: str) -> Optional[SentMessage]:
        messages = self.messages_to(to)
        return messages[-1] if messages else None

    def clear(self) -> None:
        with self._lock:
            self.sent.clear()

    def _record(self, to: str, message: Union[TextMessage, ListPrompt, FileAttachment]) -> None:
        if to in self.failing_recipients:
            raise TransportError(f"recipient unreachable: {to}")
        with self._lock:
            self.sent.append(SentMessage(to=to, message=message))


class HttpGatewayTransport(MessageTransport):
    def __init__(self, *, base_url: str, token: str = "", timeout_seconds: int = 10) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds

    def send_text(self, to: str, body: str) -> None:
        self._post("/messages/text", {"to": to, "body": body})

    def send_list(self, to: str, prompt: ListPrompt) -> None:
        self._post("/messages/list", {"to": to, **prompt.model_dump(mode="json")})

    def send_file(self, to: str, attachment: FileAttachment) -> None:
        self._post(
            "/messages/file",
            {
                "to": to,
                "filename": attachment.filename,
                "caption": attachment.caption,
                "content_type": attachment.content_type,
                "content_base64": base64.b64encode(attachment.content).decode("ascii"),
            },
        )

    def _post(self, path: str, payload: dict) -> None:
        encoded = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = request.Request(
            f"{self.base_url}{path}",
            data=encoded,
            method="POST",
            headers=headers,
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                status = response.status
        except URLError as exc:
            raise TransportError(f"gateway request failed: {path}") from exc
        except TimeoutError as exc:
            raise TransportError(f"gateway request timed out: {path}") from exc
        if status >= 300:
            raise TransportError(f"gateway rejected {path} with status {status}")


class Messenger:
    """Best-effort sender: transport failures are logged and never interrupt a flow."""

    def __init__(
        self,
        transport: MessageTransport,
        *,
        metrics: Optional["MetricsRegistry"] = None,
    ) -> None:
        self.transport = transport
        self.metrics = metrics

    def text(self, to: str, body: str) -> bool:
        return self._deliver("text", to, lambda: self.transport.send_text(to, body))

    def prompt(self, to: str, prompt: Prompt) -> bool:
        if isinstance(prompt, TextMessage):
            return self.text(to, prompt.body)
        return self._deliver("list", to, lambda: self.transport.send_list(to, prompt))

    def file(self, to: str, attachment: FileAttachment) -> bool:
        return self._deliver("file", to, lambda: self.transport.send_file(to, attachment))

    def _deliver(self, operation: str, to: str, send) -> bool:
        try:
            send()
        except TransportError as exc:
            logger.warning("transport_failed op=%s to=%s error=%s", operation, to, exc)
            if self.metrics:
                self.metrics.increment("transport_failures")
            return False
        if self.metrics:
            self.metrics.increment("messages_sent")
        return True
