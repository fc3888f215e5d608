import asyncio
import json

from conftest import LOGIN, TARGET, FakePage, FakeWebhook, bearer_request

from bearer_relay.browser_session import NavigationState
from bearer_relay.coordinator import CaptureCoordinator
from bearer_relay.exceptions import SessionSetupError, SinkUnreachableError
from bearer_relay.models import Direction, NetworkEvent
from bearer_relay.results import CaptureState, ErrorKind


def run(config, page, webhook):
    coordinator = CaptureCoordinator(config, session_factory=lambda cfg: page, webhook=webhook)
    outcome = asyncio.run(coordinator.run())
    return coordinator, outcome


def test_scenario_token_on_target_page_is_delivered(relay_config):
    page = FakePage(traffic={TARGET: [(0.05, bearer_request("abc123"))]})
    webhook = FakeWebhook()

    coordinator, outcome = run(relay_config, page, webhook)

    assert outcome.state is CaptureState.SUCCEEDED
    assert outcome.exit_code == 0
    assert [c.value for c in webhook.delivered] == ["abc123"]
    assert page.close_count == 1
    assert page.navigation_state is NavigationState.TARGET_LOADED
    assert coordinator.history == [
        CaptureState.IDLE,
        CaptureState.SESSION_STARTED,
        CaptureState.LOGGING_IN,
        CaptureState.AWAITING_TARGET,
        CaptureState.AWAITING_CREDENTIAL,
        CaptureState.DELIVERING,
        CaptureState.SUCCEEDED,
    ]


def test_many_matching_events_deliver_first_token_once(relay_config):
    events = [(0, bearer_request(f"tok{i}", request_id=str(i))) for i in range(3)]
    events.append((0, bearer_request("tok0", request_id="0")))
    page = FakePage(traffic={TARGET: events})
    webhook = FakeWebhook()

    _, outcome = run(relay_config, page, webhook)

    assert outcome.succeeded
    assert [c.value for c in webhook.delivered] == ["tok0"]


def test_scenario_no_traffic_times_out_without_delivery(relay_config, caplog):
    page = FakePage(traffic={TARGET: [(0, bearer_request("x", url="https://other.example.com/"))]})
    webhook = FakeWebhook()

    _, outcome = run(relay_config, page, webhook)

    assert outcome.state is CaptureState.FAILED
    assert outcome.error_kind is ErrorKind.EXTRACTION_TIMEOUT
    assert outcome.exit_code == 1
    assert webhook.delivered == []
    assert page.close_count == 1
    assert "Extraction timeout" in caplog.text
    assert "nothing was delivered" in caplog.text


def test_scenario_sink_error_fails_run_after_single_attempt(relay_config, rejected_webhook, caplog):
    page = FakePage(traffic={TARGET: [(0, bearer_request("abc123"))]})

    _, outcome = run(relay_config, page, rejected_webhook)

    assert outcome.error_kind is ErrorKind.DELIVERY
    assert outcome.exit_code == 1
    assert outcome.credential.value == "abc123"
    assert len(rejected_webhook.delivered) == 1
    assert page.close_count == 1
    assert "Delivery error" in caplog.text
    assert "500" in caplog.text
    assert "shared-secret" not in caplog.text


def test_unreachable_sink_is_delivery_error(relay_config):
    page = FakePage(traffic={TARGET: [(0, bearer_request("abc123"))]})
    webhook = FakeWebhook(error=SinkUnreachableError("connection refused"))

    _, outcome = run(relay_config, page, webhook)

    assert outcome.error_kind is ErrorKind.DELIVERY
    assert page.close_count == 1


def test_scenario_missing_password_never_launches(relay_config, caplog):
    relay_config.password = ""
    page = FakePage()
    webhook = FakeWebhook()

    _, outcome = run(relay_config, page, webhook)

    assert outcome.error_kind is ErrorKind.CONFIGURATION
    assert outcome.exit_code == 1
    assert "RELAY_PASSWORD" in outcome.error
    assert page.calls == []
    assert page.close_count == 0
    assert "Configuration error" in caplog.text


def test_unsupported_browser_fails_before_session_starts(relay_config):
    relay_config.browser = "firefox"
    page = FakePage()

    _, outcome = run(relay_config, page, FakeWebhook())

    assert outcome.error_kind is ErrorKind.CONFIGURATION
    assert "Unsupported browser" in outcome.error
    assert page.calls == []
    assert page.close_count == 0


def test_session_setup_failure_still_tears_down_once(relay_config, caplog):
    page = FakePage(fail_start=SessionSetupError("no chrome"))
    webhook = FakeWebhook()

    _, outcome = run(relay_config, page, webhook)

    assert outcome.error_kind is ErrorKind.SESSION_SETUP
    assert page.close_count == 1
    assert webhook.delivered == []
    assert "Session setup failed: no chrome" in caplog.text


def test_missing_login_field_is_login_flow_error(relay_config, caplog):
    page = FakePage(present=["#password", 'button[type="submit"]'])
    webhook = FakeWebhook()

    _, outcome = run(relay_config, page, webhook)

    assert outcome.error_kind is ErrorKind.LOGIN_FLOW
    assert page.close_count == 1
    assert webhook.delivered == []
    assert "Login flow failed" in caplog.text
    assert "Extraction timeout" not in caplog.text


def test_target_load_failure_is_login_flow_error(relay_config):
    page = FakePage(fail_goto=(TARGET, TimeoutError("still loading")))

    _, outcome = run(relay_config, page, FakeWebhook())

    assert outcome.error_kind is ErrorKind.LOGIN_FLOW
    assert page.close_count == 1


def test_unexpected_exception_tears_down_once(relay_config):
    page = FakePage(fail_goto=(LOGIN, KeyError("surprise")))

    _, outcome = run(relay_config, page, FakeWebhook())

    assert outcome.error_kind is ErrorKind.UNEXPECTED
    assert page.close_count == 1


def test_body_strategy_token_seen_during_login(relay_config):
    relay_config.strategy = "body"
    relay_config.token_url_contains = "/oauth/token"
    relay_config.target_url = None

    async def read_body():
        return json.dumps({"access_token": "from-auth0", "expires_in": 86400})

    token_response = NetworkEvent(
        request_id="t1",
        url="https://login.example.com/oauth/token",
        direction=Direction.RESPONSE,
        headers={},
        status=200,
        read_body=read_body,
    )
    page = FakePage(traffic={"submit": [(0, token_response)]})
    webhook = FakeWebhook()

    coordinator, outcome = run(relay_config, page, webhook)

    assert outcome.succeeded
    assert [c.value for c in webhook.delivered] == ["from-auth0"]
    assert CaptureState.AWAITING_TARGET not in coordinator.history
    assert ("goto", TARGET) not in page.calls
