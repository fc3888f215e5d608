"""Drive the identity provider's login form until the session is authenticated."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from .browser_session import NavigationState
from .config import RelayConfig
from .exceptions import CDPError, LoginFlowError

logger = logging.getLogger(__name__)


class BrowserPage(Protocol):
    navigation_state: NavigationState

    async def goto(self, url: str, timeout_seconds: float) -> None: ...

    async def wait_for_network_idle(self, timeout_seconds: float, idle_seconds: float = 0.5) -> None: ...

    async def wait_for_selector(self, selector: str, timeout_seconds: float) -> None: ...

    async def fill(self, selector: str, value: str) -> None: ...

    async def click(self, selector: str) -> None: ...

    async def current_url(self) -> str: ...


class SessionDriver:
    def __init__(self, page: BrowserPage, config: RelayConfig) -> None:
        self.page = page
        self.config = config

    async def resolve_selector(self, candidates: list[str]) -> str:
        """Return the first selector in *candidates* that appears on the page."""
        for selector in candidates:
            try:
                await self.page.wait_for_selector(selector, self.config.selector_timeout_seconds)
                logger.debug("Resolved selector %s", selector)
                return selector
            except TimeoutError:
                logger.debug("Selector %s not found, trying next", selector)
        raise LoginFlowError(f"None of the selectors matched: {', '.join(candidates)}")

    async def login(self) -> None:
        cfg = self.config
        timeout = cfg.navigation_timeout_seconds
        selectors = cfg.selectors
        try:
            logger.info("Opening login page %s", cfg.login_url)
            await self.page.goto(cfg.login_url, timeout)

            # The form renders late behind the redirect chain; wait for any variant once.
            await self.page.wait_for_selector(", ".join(selectors.username), cfg.first_selector_timeout_seconds)
            username_sel = await self.resolve_selector(selectors.username)
            password_sel = await self.resolve_selector(selectors.password)
            logger.info("Filling login form")
            await self.page.fill(username_sel, cfg.username)
            await self.page.fill(password_sel, cfg.password)

            submit_sel = await self.resolve_selector(selectors.submit)
            logger.info("Submitting login form")
            # The click can start navigation before it returns; await both together.
            click_task = asyncio.ensure_future(self.page.click(submit_sel))
            settle_task = asyncio.ensure_future(self.page.wait_for_network_idle(timeout))
            try:
                await asyncio.gather(click_task, settle_task)
            except BaseException:
                click_task.cancel()
                settle_task.cancel()
                raise
            self.page.navigation_state = NavigationState.LOGIN_SUBMITTED
            logger.info("Login submitted, now at %s", await self.page.current_url())
        except TimeoutError as exc:
            raise LoginFlowError(f"Login step timed out: {exc}") from exc
        except CDPError as exc:
            raise LoginFlowError(f"Browser rejected login step: {exc}") from exc

    async def open_target(self, url: str) -> None:
        logger.info("Loading target resource %s", url)
        try:
            await self.page.goto(url, self.config.navigation_timeout_seconds)
        except TimeoutError as exc:
            raise LoginFlowError(f"Target resource did not settle: {exc}") from exc
        except CDPError as exc:
            raise LoginFlowError(f"Could not open target resource: {exc}") from exc
        self.page.navigation_state = NavigationState.TARGET_LOADED
