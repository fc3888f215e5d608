import asyncio

import pytest

from bearer_relay.browser_session import NavigationState
from bearer_relay.config import RelayConfig
from bearer_relay.exceptions import SinkRejectedError
from bearer_relay.models import DeliveryResult, Direction, NetworkEvent

API = "https://api.example.com/v1/boards/"
LOGIN = "https://login.example.com/login"
TARGET = "https://app.example.com/board/42"


class FakePage:
    """Stands in for CaptureSession: records calls and plays scripted traffic."""

    def __init__(self, present=None, traffic=None, fail_start=None, fail_goto=None):
        self.present = set(present or ["#username", "#password", 'button[type="submit"]'])
        self.traffic = traffic or {}
        self.fail_start = fail_start
        self.fail_goto = fail_goto
        self.navigation_state = NavigationState.NOT_STARTED
        self.subscribers = []
        self.calls = []
        self.filled = {}
        self.close_count = 0
        self._tasks = set()

    def subscribe(self, subscriber):
        self.subscribers.append(subscriber)

    async def start(self):
        self.calls.append("start")
        if self.fail_start is not None:
            raise self.fail_start

    async def close(self):
        self.close_count += 1

    async def publish(self, event):
        for subscriber in self.subscribers:
            await subscriber(event)

    def publish_later(self, delay, event):
        loop = asyncio.get_running_loop()

        def _fire():
            task = loop.create_task(self.publish(event))
            self._tasks.add(task)

        loop.call_later(delay, _fire)

    async def _play(self, key):
        for delay, event in self.traffic.get(key, []):
            if delay:
                self.publish_later(delay, event)
            else:
                await self.publish(event)

    async def goto(self, url, timeout_seconds):
        self.calls.append(("goto", url))
        if self.fail_goto is not None and url == self.fail_goto[0]:
            raise self.fail_goto[1]
        await self._play(url)

    async def wait_for_network_idle(self, timeout_seconds, idle_seconds=0.5):
        self.calls.append("idle")

    async def wait_for_selector(self, selector, timeout_seconds):
        self.calls.append(("wait", selector))
        if not any(part.strip() in self.present for part in selector.split(", ")):
            raise TimeoutError(selector)

    async def fill(self, selector, value):
        self.filled[selector] = value

    async def click(self, selector):
        self.calls.append(("click", selector))
        await self._play("submit")

    async def current_url(self):
        return "https://app.example.com/home"


class FakeWebhook:
    def __init__(self, error=None):
        self.error = error
        self.delivered = []

    async def deliver_async(self, credential):
        self.delivered.append(credential)
        if self.error is not None:
            raise self.error
        return DeliveryResult(status_code=200, reason="OK", body={"ok": True})


def bearer_request(token, url=API + "42", request_id="r1"):
    return NetworkEvent(
        request_id=request_id,
        url=url,
        direction=Direction.REQUEST,
        headers={"Authorization": f"Bearer {token}"},
    )


@pytest.fixture
def relay_config():
    return RelayConfig(
        username="user@example.com",
        password="pw",
        webhook_url="https://hooks.example.com/token",
        secret="shared-secret",
        login_url=LOGIN,
        target_url=TARGET,
        strategy="header",
        api_base_url=API,
        deadline_seconds=0.3,
    )


@pytest.fixture
def rejected_webhook():
    return FakeWebhook(error=SinkRejectedError(500, "Internal Server Error", "boom"))
