from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import requests

from .exceptions import SinkRejectedError, SinkUnreachableError
from .models import Credential, DeliveryResult
from .security_utils import preview, url_host

logger = logging.getLogger(__name__)


def _response_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return _safe_text(response)


class WebhookClient:
    """POST a captured credential and the shared secret to the token sink."""

    def __init__(
        self,
        url: str,
        secret: str,
        timeout_seconds: float = 20,
        attempts: int = 1,
        backoff_seconds: float = 2.0,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.secret = secret
        self.timeout_seconds = timeout_seconds
        self.attempts = max(1, int(attempts))
        self.backoff_seconds = backoff_seconds
        self.session = session or requests.Session()

    def deliver(self, credential: Credential) -> DeliveryResult:
        payload = {"token": credential.value, "secret": self.secret}
        logger.info(
            "Sending token %s to webhook at %s (secret %s)",
            credential.preview,
            url_host(self.url),
            preview(self.secret, 4),
        )

        for attempt in range(1, self.attempts + 1):
            try:
                response = self.session.post(
                    self.url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as exc:
                logger.warning("Webhook attempt %d/%d failed: %s", attempt, self.attempts, exc)
                if attempt == self.attempts:
                    raise SinkUnreachableError(f"Webhook unreachable: {exc}") from exc
            else:
                if 200 <= response.status_code < 300:
                    body = _response_body(response)
                    logger.info("Webhook accepted token (%s): %s", response.status_code, body or "<no body>")
                    return DeliveryResult(
                        status_code=response.status_code,
                        reason=response.reason or "",
                        body=body,
                        attempts=attempt,
                    )
                text = _safe_text(response)
                logger.warning(
                    "Webhook attempt %d/%d rejected: %s %s",
                    attempt,
                    self.attempts,
                    response.status_code,
                    response.reason,
                )
                if response.status_code < 500 or attempt == self.attempts:
                    raise SinkRejectedError(response.status_code, response.reason or "", text)
            time.sleep(max(0.0, float(self.backoff_seconds)))

        raise SinkUnreachableError("Webhook delivery exhausted without a response")

    async def deliver_async(self, credential: Credential) -> DeliveryResult:
        return await asyncio.to_thread(self.deliver, credential)


def _safe_text(response: requests.Response) -> str:
    # A body read failure must not mask the status-based failure.
    try:
        return response.text
    except Exception:  # noqa: BLE001
        return ""
