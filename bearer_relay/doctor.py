from __future__ import annotations

from typing import Mapping

from .chrome_launcher import browser_is_reachable, detect_browser_path
from .config import REQUIRED_ENV, RelayConfig, env_value
from .security_utils import url_host


def run_doctor(config: RelayConfig, environ: Mapping[str, str]) -> dict:
    report = {
        "browser": config.browser,
        "browser_path": config.browser_path,
        "browser_path_found": False,
        "devtools_endpoint": f"http://{config.chrome_host}:{config.chrome_port}",
        "devtools_port_in_use": False,
        "env": {key: bool(env_value(environ, key).strip()) for key in REQUIRED_ENV.values()},
        "strategy": config.strategy,
        "webhook_host": url_host(config.webhook_url) or None,
        "errors": [],
    }

    try:
        bpath = config.browser_path or detect_browser_path(config.browser)
        report["browser_path"] = bpath
        report["browser_path_found"] = bool(bpath)
        if not bpath:
            report["errors"].append("Browser executable not found")
    except Exception as exc:  # noqa: BLE001
        report["errors"].append(f"Browser path detection failed: {exc}")

    # A listener on the port means a launch would collide with another browser.
    if browser_is_reachable(config.chrome_host, config.chrome_port):
        report["devtools_port_in_use"] = True
        report["errors"].append(f"Port {config.chrome_port} already has a DevTools endpoint")

    missing = [key for key, present in report["env"].items() if not present]
    if missing:
        report["errors"].append(f"Missing environment variable(s): {', '.join(missing)}")

    return report
