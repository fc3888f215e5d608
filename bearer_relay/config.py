from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

from .chrome_launcher import SUPPORTED_BROWSERS
from .exceptions import ConfigurationError

DEFAULT_LOGIN_URL = "https://exportarts.zone/login"
DEFAULT_API_BASE_URL = "https://exportarts-zone.nw.r.appspot.com/v1/boards/"
DEFAULT_TOKEN_URL_CONTAINS = "/oauth/token"

STRATEGIES = ("header", "body")

REQUIRED_ENV = {
    "username": "RELAY_USERNAME",
    "password": "RELAY_PASSWORD",
    "webhook_url": "WEBHOOK_URL",
    "secret": "TOKEN_UPDATE_SECRET",
}

# Names used by the older deployment scripts; read only when the primary key is unset.
ENV_FALLBACKS = {
    "RELAY_USERNAME": "XZONE_EMAIL",
    "RELAY_PASSWORD": "XZONE_PASSWORD",
    "WEBHOOK_URL": "XZONE_WEBHOOK_URL",
    "TOKEN_UPDATE_SECRET": "XZONE_WEBHOOK_SECRET",
    "TARGET_URL": "XZONE_BOARD_URL",
}

_FALSEY = {"false", "0", "no", "off"}


@dataclass
class SelectorConfig:
    username: list[str] = field(
        default_factory=lambda: ["#username", 'input[name="username"]', 'input[type="email"]']
    )
    password: list[str] = field(
        default_factory=lambda: [
            "#password",
            'input[name="password"][type="password"]',
            'input[type="password"]',
        ]
    )
    submit: list[str] = field(
        default_factory=lambda: [
            'button[type="submit"][name="action"][value="default"]',
            'button[type="submit"]',
        ]
    )


@dataclass
class RelayConfig:
    username: str
    password: str
    webhook_url: str
    secret: str
    login_url: str = DEFAULT_LOGIN_URL
    target_url: str | None = None
    headless: bool = True
    deadline_seconds: float = 30.0
    strategy: str = "body"
    api_base_url: str = DEFAULT_API_BASE_URL
    token_url_contains: str = DEFAULT_TOKEN_URL_CONTAINS
    browser: str = "chrome"
    browser_path: str | None = None
    chrome_host: str = "127.0.0.1"
    chrome_port: int = 9222
    navigation_timeout_seconds: float = 120.0
    first_selector_timeout_seconds: float = 60.0
    selector_timeout_seconds: float = 5.0
    webhook_timeout_seconds: float = 20.0
    delivery_attempts: int = 1
    delivery_backoff_seconds: float = 2.0
    selectors: SelectorConfig = field(default_factory=SelectorConfig)

    def __repr__(self) -> str:
        return (
            f"RelayConfig(username={self.username!r}, login_url={self.login_url!r}, "
            f"target_url={self.target_url!r}, strategy={self.strategy!r}, "
            f"webhook_url={self.webhook_url!r}, headless={self.headless!r})"
        )

    def validate(self) -> None:
        missing = [env for attr, env in REQUIRED_ENV.items() if not getattr(self, attr)]
        if missing:
            raise ConfigurationError(f"Missing required environment variable(s): {', '.join(missing)}")
        if self.strategy not in STRATEGIES:
            raise ConfigurationError(
                f"Unknown match strategy '{self.strategy}'. Expected one of: {', '.join(STRATEGIES)}"
            )
        if self.browser not in SUPPORTED_BROWSERS:
            raise ConfigurationError(
                f"Unsupported browser '{self.browser}'. Expected one of: {', '.join(SUPPORTED_BROWSERS)}"
            )
        if self.deadline_seconds <= 0:
            raise ConfigurationError("Capture deadline must be positive")
        if self.delivery_attempts < 1:
            raise ConfigurationError("Delivery attempts must be at least 1")


def parse_headless(value: str | None, default: bool = True) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() not in _FALSEY


def env_value(environ: Mapping[str, str], key: str) -> str:
    """Return *key* from *environ*, falling back to its legacy name when unset or blank."""
    value = environ.get(key) or ""
    if not value.strip() and key in ENV_FALLBACKS:
        value = environ.get(ENV_FALLBACKS[key]) or ""
    return value


def _number(environ: Mapping[str, str], key: str, default: float, cast: type = float):
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"Environment variable {key} must be a number, got '{raw}'") from exc


def load_config(environ: Mapping[str, str] | None = None) -> RelayConfig:
    """Build a :class:`RelayConfig` from environment-style key/value pairs.

    Validation is left to :meth:`RelayConfig.validate` so CLI flags can be
    applied on top before required values are checked.
    """
    env = os.environ if environ is None else environ
    return RelayConfig(
        username=env_value(env, "RELAY_USERNAME"),
        password=env_value(env, "RELAY_PASSWORD"),
        webhook_url=env_value(env, "WEBHOOK_URL"),
        secret=env_value(env, "TOKEN_UPDATE_SECRET"),
        login_url=env.get("LOGIN_URL") or DEFAULT_LOGIN_URL,
        target_url=env_value(env, "TARGET_URL") or None,
        headless=parse_headless(env.get("HEADLESS")),
        deadline_seconds=_number(env, "CAPTURE_DEADLINE_SECONDS", 30.0),
        strategy=(env.get("MATCH_STRATEGY") or "body").strip().lower(),
        api_base_url=env.get("API_BASE_URL") or DEFAULT_API_BASE_URL,
        token_url_contains=env.get("TOKEN_URL_CONTAINS") or DEFAULT_TOKEN_URL_CONTAINS,
        browser=(env.get("BROWSER") or "chrome").strip().lower(),
        browser_path=env.get("BROWSER_PATH") or None,
        chrome_host=env.get("CHROME_HOST") or "127.0.0.1",
        chrome_port=_number(env, "CHROME_PORT", 9222, int),
        navigation_timeout_seconds=_number(env, "NAVIGATION_TIMEOUT_SECONDS", 120.0),
        webhook_timeout_seconds=_number(env, "WEBHOOK_TIMEOUT_SECONDS", 20.0),
        delivery_attempts=_number(env, "DELIVERY_ATTEMPTS", 1, int),
        delivery_backoff_seconds=_number(env, "DELIVERY_BACKOFF_SECONDS", 2.0),
    )
