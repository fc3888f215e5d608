"""Asyncio-facing Chrome DevTools Protocol client.

``websocket-client`` is blocking, so a single reader task pulls frames in a
worker thread and hands them back to the event loop: command replies resolve
their pending futures, events fan out to registered listeners.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from collections import defaultdict
from itertools import count
from typing import Any, Callable

from websocket import (
    WebSocket,
    WebSocketBadStatusException,
    WebSocketConnectionClosedException,
    WebSocketTimeoutException,
    create_connection,
)

from .exceptions import CDPError

logger = logging.getLogger(__name__)

EventListener = Callable[[dict[str, Any]], None]


class CDPClient:
    def __init__(self, websocket_url: str, timeout_seconds: float = 10, poll_seconds: float = 1.0) -> None:
        self.websocket_url = websocket_url
        self.timeout_seconds = timeout_seconds
        self.poll_seconds = poll_seconds
        self._next_id = count(1)
        self._ws: WebSocket | None = None
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._listeners: dict[str, list[EventListener]] = defaultdict(list)
        self._reader: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closed

    async def connect(self) -> None:
        try:
            self._ws = await asyncio.to_thread(
                create_connection,
                self.websocket_url,
                timeout=self.timeout_seconds,
                enable_multithread=True,
            )
        except WebSocketBadStatusException as exc:
            raise CDPError(
                "Failed to connect to Chrome DevTools websocket. "
                "Start Chrome with --remote-allow-origins=* and --remote-debugging-port."
            ) from exc
        except OSError as exc:
            raise CDPError(f"Could not open DevTools websocket {self.websocket_url}: {exc}") from exc
        self._ws.settimeout(self.poll_seconds)
        self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        self._fail_pending(CDPError("CDP client closed"))
        if self._ws is not None:
            ws, self._ws = self._ws, None
            try:
                await asyncio.to_thread(ws.close, timeout=1)
            except Exception:  # noqa: BLE001
                logger.debug("Ignoring error while closing DevTools websocket", exc_info=True)

    def on(self, method: str, listener: EventListener) -> None:
        self._listeners[method].append(listener)

    async def send_command(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout_seconds: float | None = None,
    ) -> dict[str, Any]:
        if self._ws is None or self._closed:
            raise CDPError("CDP client is not connected")

        msg_id = next(self._next_id)
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        payload = {"id": msg_id, "method": method, "params": params or {}}
        try:
            await asyncio.to_thread(self._ws.send, json.dumps(payload))
            return await asyncio.wait_for(future, timeout_seconds or self.timeout_seconds)
        except TimeoutError as exc:
            raise CDPError(f"CDP command {method} timed out") from exc
        except WebSocketConnectionClosedException as exc:
            raise CDPError(f"DevTools connection closed while sending {method}") from exc
        finally:
            self._pending.pop(msg_id, None)

    async def _read_loop(self) -> None:
        ws = self._ws
        while ws is not None and not self._closed:
            try:
                raw = await asyncio.to_thread(ws.recv)
            except WebSocketTimeoutException:
                continue
            except (WebSocketConnectionClosedException, OSError) as exc:
                if not self._closed:
                    logger.warning("DevTools connection lost: %s", exc)
                self._fail_pending(CDPError("DevTools connection lost"))
                return
            if not raw:
                continue
            try:
                message = json.loads(raw)
            except ValueError:
                logger.debug("Skipping non-JSON DevTools frame")
                continue
            self._handle_message(message)

    def _handle_message(self, message: dict[str, Any]) -> None:
        msg_id = message.get("id")
        if msg_id is not None:
            future = self._pending.get(msg_id)
            if future is None or future.done():
                return
            if "error" in message:
                future.set_exception(CDPError(f"CDP command failed: {message['error']}"))
            else:
                future.set_result(dict(message.get("result", {})))
            return

        method = message.get("method")
        if not method:
            return
        params = dict(message.get("params", {}))
        for listener in list(self._listeners.get(method, ())):
            try:
                listener(params)
            except Exception:  # noqa: BLE001
                logger.exception("CDP listener for %s failed", method)

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    # ---- Page / Runtime helpers ----

    async def navigate(self, url: str) -> dict[str, Any]:
        """Navigate the attached page to *url* (``Page.navigate``)."""
        result = await self.send_command("Page.navigate", {"url": url})
        if result.get("errorText"):
            raise CDPError(f"Navigation to {url} failed: {result['errorText']}")
        return result

    async def evaluate(self, expression: str) -> Any:
        """Evaluate *expression* in the page and return its JSON value."""
        result = await self.send_command(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": True},
        )
        if "exceptionDetails" in result:
            details = result["exceptionDetails"]
            raise CDPError(f"Page script failed: {details.get('text', 'exception')}")
        return dict(result.get("result", {})).get("value")

    async def get_response_body(self, request_id: str) -> str:
        result = await self.send_command("Network.getResponseBody", {"requestId": request_id})
        body = str(result.get("body", ""))
        if result.get("base64Encoded"):
            return base64.b64decode(body).decode("utf-8", errors="replace")
        return body
