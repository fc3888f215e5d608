"""The Capture Session: one launched browser, one attached page, one traffic stream."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from .cdp import CDPClient
from .chrome_discovery import get_page_websocket_url
from .chrome_launcher import browser_is_reachable, launch_browser, wait_for_debug_endpoint
from .exceptions import CDPError, SessionSetupError
from .models import Direction, NetworkEvent
from .security_utils import redact_headers

logger = logging.getLogger(__name__)

EventSubscriber = Callable[[NetworkEvent], Awaitable[None]]

# Long-lived streams never report loadingFinished and would block the settle signal.
_UNTRACKED_RESOURCE_TYPES = {"EventSource", "WebSocket"}


class NavigationState(str, Enum):
    NOT_STARTED = "not-started"
    LOGIN_SUBMITTED = "login-submitted"
    TARGET_LOADED = "target-loaded"


@dataclass
class BrowserLaunchConfig:
    browser: str = "chrome"
    browser_path: str | None = None
    host: str = "127.0.0.1"
    port: int = 9222
    headless: bool = True
    startup_timeout_seconds: float = 30.0


class CaptureSession:
    """Owns the browser process and its DevTools connection for one capture run.

    Usage::

        async with CaptureSession(BrowserLaunchConfig()) as session:
            session.subscribe(handler)
            await session.goto("https://example.com", timeout_seconds=60)
    """

    def __init__(
        self,
        config: BrowserLaunchConfig,
        client_factory: Callable[[str], CDPClient] = CDPClient,
    ) -> None:
        self.config = config
        self.navigation_state = NavigationState.NOT_STARTED
        self._client_factory = client_factory
        self._client: CDPClient | None = None
        self._proc: subprocess.Popen[bytes] | None = None
        self._profile_dir: str | None = None
        self._subscribers: list[EventSubscriber] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._requests: dict[str, dict[str, Any]] = {}
        self._inflight: set[str] = set()
        self._last_activity = time.monotonic()
        self._started = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> CaptureSession:
        try:
            await self.start()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        await self.close()
        return False

    # ---- lifecycle ----

    async def start(self) -> None:
        if self._started:
            raise SessionSetupError("Capture session already started")
        self._started = True
        cfg = self.config
        # Another browser on the port would answer our discovery calls and we would attach to it.
        if await asyncio.to_thread(browser_is_reachable, cfg.host, cfg.port):
            raise SessionSetupError(f"Port {cfg.port} already has a DevTools endpoint; refusing to share it")
        try:
            self._profile_dir = tempfile.mkdtemp(prefix="bearer-relay-profile-")
            self._proc = await asyncio.to_thread(
                launch_browser,
                cfg.browser,
                cfg.browser_path,
                cfg.port,
                cfg.headless,
                self._profile_dir,
            )
            await asyncio.to_thread(wait_for_debug_endpoint, cfg.host, cfg.port, cfg.startup_timeout_seconds)
            ws_url = await asyncio.to_thread(get_page_websocket_url, cfg.host, cfg.port)
            self._client = self._client_factory(ws_url)
            await self._client.connect()
            self._attach_network_listeners(self._client)
            for domain in ("Network", "Page", "Runtime"):
                await self._client.send_command(f"{domain}.enable", {})
        except SessionSetupError:
            raise
        except CDPError as exc:
            raise SessionSetupError(f"Could not attach to browser page: {exc}") from exc
        logger.info("Browser session ready (headless=%s, port=%s)", cfg.headless, cfg.port)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        if self._client is not None:
            try:
                await self._client.close()
            except Exception:  # noqa: BLE001
                logger.warning("Error while closing DevTools connection", exc_info=True)
            self._client = None

        if self._proc is not None:
            proc, self._proc = self._proc, None
            proc.terminate()
            try:
                await asyncio.to_thread(proc.wait, 5)
            except subprocess.TimeoutExpired:
                proc.kill()

        if self._profile_dir is not None:
            shutil.rmtree(self._profile_dir, ignore_errors=True)
            self._profile_dir = None
        logger.info("Browser session closed")

    # ---- traffic stream ----

    def subscribe(self, subscriber: EventSubscriber) -> None:
        self._subscribers.append(subscriber)

    def _attach_network_listeners(self, client: CDPClient) -> None:
        client.on("Network.requestWillBeSent", self._on_request)
        client.on("Network.requestWillBeSentExtraInfo", self._on_request_extra_info)
        client.on("Network.responseReceived", self._on_response)
        client.on("Network.loadingFinished", self._on_loading_done)
        client.on("Network.loadingFailed", self._on_loading_done)

    def _on_request(self, params: dict[str, Any]) -> None:
        request_id = str(params.get("requestId", ""))
        request = dict(params.get("request", {}))
        state = self._requests.setdefault(request_id, {"headers": {}})
        state["url"] = str(request.get("url", ""))
        state["method"] = str(request.get("method", "GET"))
        state["headers"].update({str(k): str(v) for k, v in dict(request.get("headers", {})).items()})
        if params.get("type") not in _UNTRACKED_RESOURCE_TYPES:
            self._inflight.add(request_id)
        self._touch()
        self._emit_request(request_id, state)

    def _on_request_extra_info(self, params: dict[str, Any]) -> None:
        request_id = str(params.get("requestId", ""))
        state = self._requests.setdefault(request_id, {"headers": {}})
        state["headers"].update({str(k): str(v) for k, v in dict(params.get("headers", {})).items()})
        # Raw headers can arrive after requestWillBeSent; re-emit with the merged view.
        if "url" in state:
            self._emit_request(request_id, state)

    def _on_response(self, params: dict[str, Any]) -> None:
        request_id = str(params.get("requestId", ""))
        response = dict(params.get("response", {}))
        self._touch()
        event = NetworkEvent(
            request_id=request_id,
            url=str(response.get("url", "")),
            direction=Direction.RESPONSE,
            headers={str(k): str(v) for k, v in dict(response.get("headers", {})).items()},
            method=str(self._requests.get(request_id, {}).get("method", "GET")),
            status=int(response.get("status", 0)),
            read_body=lambda: self._read_body(request_id),
        )
        self._publish(event)

    def _on_loading_done(self, params: dict[str, Any]) -> None:
        request_id = str(params.get("requestId", ""))
        self._inflight.discard(request_id)
        self._requests.pop(request_id, None)
        self._touch()

    def _emit_request(self, request_id: str, state: dict[str, Any]) -> None:
        event = NetworkEvent(
            request_id=request_id,
            url=state["url"],
            direction=Direction.REQUEST,
            headers=dict(state["headers"]),
            method=state.get("method", "GET"),
        )
        self._publish(event)

    def _publish(self, event: NetworkEvent) -> None:
        if self._closed:
            return
        logger.debug("%s %s %s", event.direction.value, event.url, redact_headers(event.headers))
        loop = asyncio.get_running_loop()
        for subscriber in self._subscribers:
            task = loop.create_task(subscriber(event))
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Traffic subscriber failed: %s", task.exception())

    async def _read_body(self, request_id: str) -> str:
        if self._client is None:
            raise CDPError("Session is closed")
        # Bodies are only retrievable once the response finished loading; retry briefly.
        for attempt in range(20):
            try:
                return await self._client.get_response_body(request_id)
            except CDPError:
                if attempt == 19 or self._client is None:
                    raise
                await asyncio.sleep(0.1)
        raise CDPError(f"No body for request {request_id}")

    def _touch(self) -> None:
        self._last_activity = time.monotonic()

    # ---- page actions ----

    def _require_client(self) -> CDPClient:
        if self._client is None or self._closed:
            raise CDPError("Capture session is not running")
        return self._client

    async def goto(self, url: str, timeout_seconds: float) -> None:
        client = self._require_client()
        self._touch()
        await client.navigate(url)
        await self.wait_for_network_idle(timeout_seconds)

    async def wait_for_network_idle(self, timeout_seconds: float, idle_seconds: float = 0.5) -> None:
        """Settle signal: no tracked request in flight for *idle_seconds*."""
        deadline = time.monotonic() + timeout_seconds
        while True:
            now = time.monotonic()
            if not self._inflight and now - self._last_activity >= idle_seconds:
                return
            if now >= deadline:
                raise TimeoutError(
                    f"Network did not settle within {timeout_seconds:g}s "
                    f"({len(self._inflight)} request(s) still in flight)"
                )
            await asyncio.sleep(0.1)

    async def wait_for_selector(self, selector: str, timeout_seconds: float) -> None:
        client = self._require_client()
        expression = f"document.querySelector({json.dumps(selector)}) !== null"
        deadline = time.monotonic() + timeout_seconds
        while True:
            try:
                if await client.evaluate(expression):
                    return
            except CDPError:
                # Execution context is torn down while a redirect is in progress.
                logger.debug("Selector check for %s failed, retrying", selector)
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Selector {selector} not found within {timeout_seconds:g}s")
            await asyncio.sleep(0.1)

    async def fill(self, selector: str, value: str) -> None:
        client = self._require_client()
        expression = (
            "(() => {"
            f"const el = document.querySelector({json.dumps(selector)});"
            "if (!el) return false;"
            "el.focus();"
            "const desc = Object.getOwnPropertyDescriptor(Object.getPrototypeOf(el), 'value');"
            f"const value = {json.dumps(value)};"
            "if (desc && desc.set) { desc.set.call(el, value); } else { el.value = value; }"
            "el.dispatchEvent(new Event('input', {bubbles: true}));"
            "el.dispatchEvent(new Event('change', {bubbles: true}));"
            "return true;"
            "})()"
        )
        if not await client.evaluate(expression):
            raise CDPError(f"Cannot fill {selector}: element disappeared")

    async def click(self, selector: str) -> None:
        client = self._require_client()
        expression = (
            "(() => {"
            f"const el = document.querySelector({json.dumps(selector)});"
            "if (!el) return false;"
            "el.click();"
            "return true;"
            "})()"
        )
        self._touch()
        if not await client.evaluate(expression):
            raise CDPError(f"Cannot click {selector}: element disappeared")

    async def current_url(self) -> str:
        client = self._require_client()
        return str(await client.evaluate("location.href") or "")
