import asyncio

import pytest

from bearer_relay.browser_session import BrowserLaunchConfig, CaptureSession
from bearer_relay.exceptions import CDPError, SessionSetupError
from bearer_relay.models import Direction


class FakeProc:
    def __init__(self):
        self.terminated = 0

    def terminate(self):
        self.terminated += 1

    def wait(self, timeout=None):
        return 0

    def kill(self):
        pass


class FakeCDPClient:
    def __init__(self, ws_url):
        self.ws_url = ws_url
        self.listeners = {}
        self.commands = []
        self.closed = 0
        self.dom = set()
        self.script_results = []
        self.bodies = {}

    async def connect(self):
        return None

    async def close(self):
        self.closed += 1

    def on(self, method, listener):
        self.listeners.setdefault(method, []).append(listener)

    def fire(self, method, params):
        for listener in self.listeners.get(method, []):
            listener(params)

    async def send_command(self, method, params=None, timeout_seconds=None):
        self.commands.append(method)
        return {}

    async def navigate(self, url):
        self.commands.append(("navigate", url))
        return {}

    async def evaluate(self, expression):
        self.script_results.append(expression)
        if expression.startswith("document.querySelector("):
            selector = expression[len("document.querySelector("):].split(")")[0].strip('"')
            return selector in self.dom
        return True

    async def get_response_body(self, request_id):
        return self.bodies[request_id]


@pytest.fixture
def launched(monkeypatch):
    procs = []

    def fake_launch(browser, browser_path, port, headless, user_data_dir=None):
        proc = FakeProc()
        procs.append((proc, headless, user_data_dir))
        return proc

    monkeypatch.setattr("bearer_relay.browser_session.browser_is_reachable", lambda *a, **k: False)
    monkeypatch.setattr("bearer_relay.browser_session.launch_browser", fake_launch)
    monkeypatch.setattr("bearer_relay.browser_session.wait_for_debug_endpoint", lambda *a, **k: None)
    monkeypatch.setattr("bearer_relay.browser_session.get_page_websocket_url", lambda *a, **k: "ws://fake/page")
    return procs


def make_session():
    clients = []

    def factory(ws_url):
        client = FakeCDPClient(ws_url)
        clients.append(client)
        return client

    return CaptureSession(BrowserLaunchConfig(headless=True), client_factory=factory), clients


def test_start_enables_domains_and_close_runs_once(launched):
    session, clients = make_session()

    async def _run():
        async with session:
            pass
        await session.close()

    asyncio.run(_run())

    client = clients[0]
    assert client.ws_url == "ws://fake/page"
    assert client.commands == ["Network.enable", "Page.enable", "Runtime.enable"]
    assert client.closed == 1
    proc, headless, profile_dir = launched[0]
    assert proc.terminated == 1
    assert headless is True
    assert profile_dir
    assert session.closed


def test_start_failure_tears_down_allocated_process(launched, monkeypatch):
    def not_up(*args, **kwargs):
        raise SessionSetupError("DevTools never came up")

    monkeypatch.setattr("bearer_relay.browser_session.wait_for_debug_endpoint", not_up)
    session, _ = make_session()

    async def _run():
        async with session:
            pass

    with pytest.raises(SessionSetupError):
        asyncio.run(_run())
    assert launched[0][0].terminated == 1


def test_start_refuses_port_already_serving_devtools(launched, monkeypatch):
    monkeypatch.setattr("bearer_relay.browser_session.browser_is_reachable", lambda *a, **k: True)
    session, clients = make_session()

    async def _run():
        async with session:
            pass

    with pytest.raises(SessionSetupError, match="already has a DevTools endpoint"):
        asyncio.run(_run())
    assert launched == []
    assert clients == []
    assert session.closed


def test_request_and_response_events_are_published(launched):
    session, clients = make_session()
    events = []

    async def subscriber(event):
        events.append(event)

    async def _run():
        session.subscribe(subscriber)
        await session.start()
        client = clients[0]
        client.fire(
            "Network.requestWillBeSent",
            {
                "requestId": "1",
                "type": "XHR",
                "request": {"url": "https://api.example.com/v1/boards/", "method": "GET", "headers": {"Accept": "*/*"}},
            },
        )
        client.fire(
            "Network.requestWillBeSentExtraInfo",
            {"requestId": "1", "headers": {"authorization": "Bearer abc"}},
        )
        client.bodies["2"] = '{"access_token": "t"}'
        client.fire(
            "Network.responseReceived",
            {"requestId": "2", "response": {"url": "https://login.example.com/oauth/token", "status": 200, "headers": {}}},
        )
        await asyncio.sleep(0)
        body = await events[-1].body()
        await session.close()
        return body

    body = asyncio.run(_run())

    assert [e.direction for e in events] == [Direction.REQUEST, Direction.REQUEST, Direction.RESPONSE]
    assert events[0].header("Authorization") is None
    assert events[1].header("Authorization") == "Bearer abc"
    assert events[2].status == 200
    assert body == '{"access_token": "t"}'


def test_network_idle_waits_for_inflight_requests(launched):
    session, clients = make_session()

    async def _run():
        await session.start()
        client = clients[0]
        client.fire(
            "Network.requestWillBeSent",
            {"requestId": "1", "type": "Document", "request": {"url": "https://x/", "headers": {}}},
        )
        with pytest.raises(TimeoutError):
            await session.wait_for_network_idle(0.2, idle_seconds=0.05)

        client.fire("Network.loadingFinished", {"requestId": "1"})
        await session.wait_for_network_idle(1.0, idle_seconds=0.05)
        await session.close()

    asyncio.run(_run())


def test_event_streams_do_not_block_settling(launched):
    session, clients = make_session()

    async def _run():
        await session.start()
        clients[0].fire(
            "Network.requestWillBeSent",
            {"requestId": "es", "type": "EventSource", "request": {"url": "https://x/stream", "headers": {}}},
        )
        await session.wait_for_network_idle(1.0, idle_seconds=0.05)
        await session.close()

    asyncio.run(_run())


def test_wait_for_selector_and_page_actions(launched):
    session, clients = make_session()

    async def _run():
        await session.start()
        client = clients[0]
        client.dom.add("#username")
        await session.wait_for_selector("#username", 0.5)
        with pytest.raises(TimeoutError):
            await session.wait_for_selector("#missing", 0.2)
        await session.fill("#username", "user@example.com")
        await session.click("#submit")
        await session.close()
        return client

    client = asyncio.run(_run())
    assert any("user@example.com" in script for script in client.script_results)


def test_actions_after_close_fail(launched):
    session, _ = make_session()

    async def _run():
        await session.start()
        await session.close()
        await session.goto("https://x/", 1)

    with pytest.raises(CDPError):
        asyncio.run(_run())
