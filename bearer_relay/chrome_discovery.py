from __future__ import annotations

import json
import logging
import time
import urllib.parse
import urllib.request

from .exceptions import SessionSetupError

logger = logging.getLogger(__name__)


def _page_targets(host: str, port: int) -> list[dict]:
    """Return the ``page`` targets the DevTools endpoint currently lists."""
    with urllib.request.urlopen(f"http://{host}:{port}/json/list", timeout=5) as response:
        targets = json.loads(response.read().decode("utf-8"))
    if not isinstance(targets, list):
        raise SessionSetupError("DevTools /json/list did not return a target list")
    return [t for t in targets if isinstance(t, dict) and t.get("type") == "page"]


def _page_socket(host: str, port: int, target: dict) -> str:
    ws_url = target.get("webSocketDebuggerUrl")
    if ws_url:
        return str(ws_url)
    target_id = str(target.get("id") or "")
    if not target_id:
        raise SessionSetupError("Page target has neither webSocketDebuggerUrl nor id")
    return f"ws://{host}:{port}/devtools/page/{urllib.parse.quote(target_id)}"


def get_page_websocket_url(host: str, port: int, timeout_seconds: float = 4.0, poll_seconds: float = 0.5) -> str:
    """Wait for the freshly launched browser to expose its blank page and return its socket URL.

    The startup page can appear a moment after ``/json/version`` answers, so the
    listing is polled until a page shows up or *timeout_seconds* runs out.
    """
    deadline = time.monotonic() + timeout_seconds
    last_error: Exception | None = None
    while True:
        try:
            pages = _page_targets(host, port)
        except (OSError, ValueError) as exc:
            last_error = exc
            pages = []
        if pages:
            return _page_socket(host, port, pages[0])
        if time.monotonic() >= deadline:
            break
        logger.debug("No page target on %s:%s yet", host, port)
        time.sleep(poll_seconds)
    raise SessionSetupError("Browser exposed no page target to attach to") from last_error
