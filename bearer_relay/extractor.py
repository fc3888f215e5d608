"""Pick the bearer credential out of a page's network traffic.

Two matching policies are supported:

* ``header``: requests under a configured API base path carrying
  ``Authorization: Bearer <token>``.
* ``body``: 2xx responses from the token-issuance endpoint whose JSON body
  has an ``access_token`` field.

The extractor accepts exactly one credential per run. The first event that
satisfies the policy wins; every later candidate is ignored without error.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Protocol

from .models import Credential, CredentialSource, Direction, NetworkEvent

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


class MatchingPolicy(Protocol):
    name: str

    def wants(self, event: NetworkEvent) -> bool:
        """Cheap URL/direction check done before any body is read."""

    async def extract(self, event: NetworkEvent) -> Credential | None:
        ...


class HeaderPolicy:
    name = "header"

    def __init__(self, api_base_url: str) -> None:
        self.api_base_url = api_base_url

    def wants(self, event: NetworkEvent) -> bool:
        return event.direction is Direction.REQUEST and event.url.startswith(self.api_base_url)

    async def extract(self, event: NetworkEvent) -> Credential | None:
        token = bearer_token(event.header("Authorization"))
        if token is None:
            return None
        return Credential(value=token, source=CredentialSource.REQUEST_HEADER, url=event.url)


class BodyPolicy:
    name = "body"

    def __init__(self, url_contains: str) -> None:
        self.url_contains = url_contains

    def wants(self, event: NetworkEvent) -> bool:
        return (
            event.direction is Direction.RESPONSE
            and self.url_contains in event.url
            and event.status is not None
            and 200 <= event.status < 300
        )

    async def extract(self, event: NetworkEvent) -> Credential | None:
        raw = await event.body()
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.debug("Token endpoint response from %s is not JSON", event.url)
            return None
        if not isinstance(payload, dict):
            return None
        token = payload.get("access_token")
        if not isinstance(token, str) or not token:
            return None
        return Credential(value=token, source=CredentialSource.RESPONSE_BODY, url=event.url)


def bearer_token(header_value: str | None) -> str | None:
    """Return the token from an ``Authorization`` value, or ``None``.

    The scheme match is case-sensitive; an empty remainder is rejected.
    """
    if not header_value or not header_value.startswith(BEARER_PREFIX):
        return None
    token = header_value[len(BEARER_PREFIX):].strip()
    return token or None


def build_policy(strategy: str, api_base_url: str, token_url_contains: str) -> MatchingPolicy:
    if strategy == "header":
        return HeaderPolicy(api_base_url)
    if strategy == "body":
        return BodyPolicy(token_url_contains)
    raise ValueError(f"Unknown match strategy: {strategy}")


class CredentialExtractor:
    def __init__(self, policy: MatchingPolicy) -> None:
        self.policy = policy
        self.credential: Credential | None = None
        self._found: asyncio.Future[Credential] | None = None
        self._closed = False
        self.late_candidates = 0

    @property
    def found(self) -> asyncio.Future[Credential]:
        """Single-fire notification resolved with the accepted credential."""
        if self._found is None:
            self._found = asyncio.get_running_loop().create_future()
        return self._found

    def stop(self) -> None:
        """Refuse new extraction attempts; in-flight ones are discarded on completion."""
        self._closed = True

    async def observe(self, event: NetworkEvent) -> None:
        """Traffic-stream subscriber. Never raises."""
        if self._closed:
            return
        try:
            if not self.policy.wants(event):
                return
            if self.credential is not None:
                self.late_candidates += 1
                return
            candidate = await self.policy.extract(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug("Skipping %s event for %s: %s", event.direction.value, event.url, exc)
            return
        if candidate is not None:
            self.accept(candidate)

    def accept(self, candidate: Credential) -> bool:
        # No await between the check and the assignment: this is the first-match guard.
        if self.credential is not None or self._closed:
            self.late_candidates += 1
            logger.debug("Ignoring additional credential candidate from %s", candidate.url)
            return False
        self.credential = candidate
        logger.info(
            "Credential found via %s (%s): %s",
            candidate.source.value,
            candidate.url,
            candidate.preview,
        )
        if not self.found.done():
            self.found.set_result(candidate)
        return True
