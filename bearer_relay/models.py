from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from .security_utils import preview


class CredentialSource(str, Enum):
    REQUEST_HEADER = "request-header"
    RESPONSE_BODY = "response-body"


class Direction(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"


BodyReader = Callable[[], Awaitable[str]]


@dataclass(frozen=True)
class Credential:
    value: str
    source: CredentialSource
    url: str
    discovered_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def preview(self) -> str:
        return preview(self.value)

    def __repr__(self) -> str:
        return f"Credential(value={self.preview!r}, source={self.source.value!r}, url={self.url!r})"


@dataclass
class NetworkEvent:
    """One observed request or response from the page's traffic stream.

    ``read_body`` is only set for responses; bodies are fetched lazily because
    most events are discarded on URL alone.
    """

    request_id: str
    url: str
    direction: Direction
    headers: dict[str, str]
    method: str = "GET"
    status: int | None = None
    read_body: BodyReader | None = None

    def header(self, name: str) -> str | None:
        low = name.lower()
        for key, value in self.headers.items():
            if key.lower() == low:
                return value
        return None

    async def body(self) -> str:
        if self.read_body is None:
            raise ValueError(f"Event {self.request_id} has no readable body")
        return await self.read_body()


@dataclass
class DeliveryResult:
    status_code: int
    reason: str
    body: Any
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300
