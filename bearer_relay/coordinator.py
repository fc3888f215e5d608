"""End-to-end capture run: session, login, credential race, delivery, teardown."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .browser_session import BrowserLaunchConfig, CaptureSession
from .config import RelayConfig
from .exceptions import (
    ConfigurationError,
    DeliveryError,
    ExtractionTimeoutError,
    LoginFlowError,
    SessionSetupError,
    SinkRejectedError,
)
from .extractor import CredentialExtractor, build_policy
from .login import SessionDriver
from .models import Credential
from .results import CaptureOutcome, CaptureState, ErrorKind
from .webhook import WebhookClient

logger = logging.getLogger(__name__)

SessionFactory = Callable[[RelayConfig], CaptureSession]


def default_session_factory(config: RelayConfig) -> CaptureSession:
    return CaptureSession(
        BrowserLaunchConfig(
            browser=config.browser,
            browser_path=config.browser_path,
            host=config.chrome_host,
            port=config.chrome_port,
            headless=config.headless,
        )
    )


def default_webhook(config: RelayConfig) -> WebhookClient:
    return WebhookClient(
        config.webhook_url,
        config.secret,
        timeout_seconds=config.webhook_timeout_seconds,
        attempts=config.delivery_attempts,
        backoff_seconds=config.delivery_backoff_seconds,
    )


class CaptureCoordinator:
    def __init__(
        self,
        config: RelayConfig,
        session_factory: SessionFactory = default_session_factory,
        webhook: WebhookClient | None = None,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.webhook = webhook
        self.state = CaptureState.IDLE
        self.history: list[CaptureState] = [CaptureState.IDLE]

    def _enter(self, state: CaptureState) -> None:
        logger.info("State %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _fail(
        self,
        kind: ErrorKind,
        exc: BaseException,
        credential: Credential | None = None,
    ) -> CaptureOutcome:
        self._enter(CaptureState.FAILED)
        return CaptureOutcome(
            state=CaptureState.FAILED,
            credential=credential,
            error_kind=kind,
            error=str(exc),
        )

    async def run(self) -> CaptureOutcome:
        cfg = self.config
        try:
            cfg.validate()
        except ConfigurationError as exc:
            logger.error("Configuration error: %s", exc)
            return self._fail(ErrorKind.CONFIGURATION, exc)

        webhook = self.webhook or default_webhook(cfg)
        extractor = CredentialExtractor(build_policy(cfg.strategy, cfg.api_base_url, cfg.token_url_contains))
        session = self.session_factory(cfg)
        session.subscribe(extractor.observe)

        try:
            await session.start()
            self._enter(CaptureState.SESSION_STARTED)

            driver = SessionDriver(session, cfg)
            self._enter(CaptureState.LOGGING_IN)
            await driver.login()

            if cfg.target_url:
                self._enter(CaptureState.AWAITING_TARGET)
                await driver.open_target(cfg.target_url)

            self._enter(CaptureState.AWAITING_CREDENTIAL)
            credential = await self._await_credential(extractor)
            extractor.stop()

            self._enter(CaptureState.DELIVERING)
            try:
                delivery = await webhook.deliver_async(credential)
            except DeliveryError as exc:
                self._log_delivery_error(exc, credential)
                return self._fail(ErrorKind.DELIVERY, exc, credential)

            self._enter(CaptureState.SUCCEEDED)
            logger.info("Token captured and delivered")
            return CaptureOutcome(state=CaptureState.SUCCEEDED, credential=credential, delivery=delivery)
        except SessionSetupError as exc:
            logger.error("Session setup failed: %s", exc)
            return self._fail(ErrorKind.SESSION_SETUP, exc)
        except LoginFlowError as exc:
            logger.error("Login flow failed: %s", exc)
            return self._fail(ErrorKind.LOGIN_FLOW, exc)
        except ExtractionTimeoutError as exc:
            logger.error("Extraction timeout: %s (login completed, nothing was delivered)", exc)
            return self._fail(ErrorKind.EXTRACTION_TIMEOUT, exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error during capture run")
            return self._fail(ErrorKind.UNEXPECTED, exc, extractor.credential)
        finally:
            extractor.stop()
            await session.close()

    async def _await_credential(self, extractor: CredentialExtractor) -> Credential:
        deadline = self.config.deadline_seconds
        logger.info("Waiting for credential (max %gs)", deadline)
        found = extractor.found
        timer = asyncio.ensure_future(asyncio.sleep(deadline))
        try:
            done, _ = await asyncio.wait({found, timer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            timer.cancel()
        if found in done:
            return found.result()
        raise ExtractionTimeoutError(deadline)

    def _log_delivery_error(self, exc: DeliveryError, credential: Credential) -> None:
        if isinstance(exc, SinkRejectedError):
            logger.error(
                "Delivery error: webhook returned %s %s, body=%r. Token %s was captured but NOT saved",
                exc.status_code,
                exc.reason,
                exc.body[:400],
                credential.preview,
            )
        else:
            logger.error(
                "Delivery error: webhook unreachable (%s). Token %s was captured but NOT saved",
                exc,
                credential.preview,
            )


def run_capture(config: RelayConfig, **kwargs) -> CaptureOutcome:
    return asyncio.run(CaptureCoordinator(config, **kwargs).run())
