from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from importlib.metadata import PackageNotFoundError, version

from .chrome_launcher import SUPPORTED_BROWSERS
from .config import STRATEGIES, RelayConfig, load_config
from .coordinator import run_capture
from .doctor import run_doctor
from .exceptions import ConfigurationError

logger = logging.getLogger("bearer_relay")


def _tool_version() -> str:
    try:
        return version("bearer-relay")
    except PackageNotFoundError:
        return "0.0.0"


def _emit(payload: dict, output_format: str) -> None:
    if output_format == "ndjson":
        print(json.dumps(payload, separators=(",", ":")))
        return
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bearer-relay",
        description=(
            "Log in to a web app in a real browser, capture the bearer token it "
            "obtains, and deliver it to a webhook."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {_tool_version()}")
    parser.add_argument("--format", choices=["json", "ndjson"], default="json")
    parser.add_argument("--verbose", "-v", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=True)

    capture_parser = subparsers.add_parser("capture", help="Run one token capture and delivery")
    capture_parser.add_argument("--login-url", default=None)
    capture_parser.add_argument("--target-url", default=None)
    capture_parser.add_argument("--strategy", choices=list(STRATEGIES), default=None)
    capture_parser.add_argument("--api-base", default=None, dest="api_base_url")
    capture_parser.add_argument("--token-url-contains", default=None)
    capture_parser.add_argument("--deadline", type=float, default=None, dest="deadline_seconds")
    headless = capture_parser.add_mutually_exclusive_group()
    headless.add_argument("--headless", action="store_true", default=None)
    headless.add_argument("--headed", action="store_false", dest="headless", default=None)
    capture_parser.add_argument("--browser", choices=list(SUPPORTED_BROWSERS), default=None)
    capture_parser.add_argument("--browser-path", default=None)
    capture_parser.add_argument("--chrome-port", type=int, default=None)
    capture_parser.add_argument("--delivery-attempts", type=int, default=None)

    subparsers.add_parser("doctor", help="Check browser and environment readiness")

    return parser


def apply_overrides(config: RelayConfig, args: argparse.Namespace) -> RelayConfig:
    for attr in (
        "login_url",
        "target_url",
        "strategy",
        "api_base_url",
        "token_url_contains",
        "deadline_seconds",
        "headless",
        "browser",
        "browser_path",
        "chrome_port",
        "delivery_attempts",
    ):
        val = getattr(args, attr, None)
        if val is not None:
            setattr(config, attr, val)
    return config


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        config = load_config()
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        sys.exit(1)

    if args.command == "doctor":
        report = run_doctor(config, os.environ)
        _emit(report, args.format)
        sys.exit(0 if not report["errors"] else 1)

    if args.command == "capture":
        apply_overrides(config, args)
        outcome = run_capture(config)
        _emit(outcome.to_dict(), args.format)
        sys.exit(outcome.exit_code)

    parser.error("Unknown command")


if __name__ == "__main__":
    main()
