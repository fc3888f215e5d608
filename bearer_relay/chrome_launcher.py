from __future__ import annotations

import logging
import os
import platform
import shutil
import subprocess
import tempfile
import time
import urllib.request

from .exceptions import SessionSetupError

logger = logging.getLogger(__name__)

SUPPORTED_BROWSERS = ("chrome", "edge", "chromium")

_POSIX_EXECUTABLES = {
    "chrome": ["google-chrome", "google-chrome-stable", "chrome"],
    "edge": ["microsoft-edge", "microsoft-edge-stable", "msedge"],
    "chromium": ["chromium", "chromium-browser"],
}


def detect_browser_path(browser: str) -> str | None:
    browser = browser.lower()
    if browser not in SUPPORTED_BROWSERS:
        raise ValueError(f"Unsupported browser: {browser}")

    system = platform.system().lower()
    if "darwin" in system:
        app_paths = {
            "chrome": "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
            "edge": "/Applications/Microsoft Edge.app/Contents/MacOS/Microsoft Edge",
            "chromium": "/Applications/Chromium.app/Contents/MacOS/Chromium",
        }
        path = app_paths[browser]
        return path if os.path.exists(path) else None
    if "windows" in system:
        candidates = {
            "chrome": [
                os.path.expandvars(r"%ProgramFiles%\\Google\\Chrome\\Application\\chrome.exe"),
                os.path.expandvars(r"%ProgramFiles(x86)%\\Google\\Chrome\\Application\\chrome.exe"),
                os.path.expandvars(r"%LocalAppData%\\Google\\Chrome\\Application\\chrome.exe"),
            ],
            "edge": [
                os.path.expandvars(r"%ProgramFiles%\\Microsoft\\Edge\\Application\\msedge.exe"),
                os.path.expandvars(r"%ProgramFiles(x86)%\\Microsoft\\Edge\\Application\\msedge.exe"),
            ],
            "chromium": [
                os.path.expandvars(r"%LocalAppData%\\Chromium\\Application\\chrome.exe"),
            ],
        }[browser]
        for candidate in candidates:
            if os.path.exists(candidate):
                return candidate
        return None
    for name in _POSIX_EXECUTABLES[browser]:
        found = shutil.which(name)
        if found:
            return found
    return None


def browser_is_reachable(host: str, port: int, timeout_seconds: float = 2.0) -> bool:
    """Return ``True`` if a DevTools endpoint is already listening."""
    url = f"http://{host}:{port}/json/version"
    try:
        with urllib.request.urlopen(url, timeout=timeout_seconds):
            return True
    except Exception:  # noqa: BLE001
        return False


def wait_for_debug_endpoint(host: str, port: int, timeout_seconds: float = 30) -> None:
    deadline = time.time() + timeout_seconds
    while time.time() < deadline:
        if browser_is_reachable(host, port, timeout_seconds=1):
            return
        time.sleep(0.5)
    raise SessionSetupError(f"Chrome DevTools endpoint did not come up at http://{host}:{port}")


def build_browser_args(
    browser_path: str,
    port: int,
    user_data_dir: str,
    headless: bool,
) -> list[str]:
    args = [
        browser_path,
        f"--remote-debugging-port={port}",
        "--remote-allow-origins=*",
        f"--user-data-dir={user_data_dir}",
        "--no-first-run",
        "--no-default-browser-check",
    ]
    if headless:
        args.append("--headless=new")
    args.append("about:blank")
    return args


def launch_browser(
    browser: str,
    browser_path: str | None,
    port: int,
    headless: bool,
    user_data_dir: str | None = None,
) -> subprocess.Popen[bytes]:
    resolved = browser_path or detect_browser_path(browser)
    if not resolved:
        raise SessionSetupError(
            f"Could not determine {browser.title()} path. Set BROWSER_PATH or pass --browser-path."
        )

    profile_root = user_data_dir or tempfile.mkdtemp(prefix="bearer-relay-profile-")
    args = build_browser_args(resolved, port, profile_root, headless)
    logger.debug("Launching browser: %s", " ".join(args))
    try:
        return subprocess.Popen(args, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError as exc:
        raise SessionSetupError(f"Failed to launch {resolved}: {exc}") from exc
