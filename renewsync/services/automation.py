from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import Awaitable, Callable
from urllib.parse import urljoin

from renewsync.core.config import Settings, get_settings
from renewsync.core.errors import (
    ActionNotFoundError,
    AuthenticationRequiredError,
    AutomationCancelledError,
    AutomationError,
    LoginFailedError,
    NavigationTimeoutError,
    TransientNetworkError,
)
from renewsync.providers.panel.base import PanelPage, PanelProvider
from renewsync.providers.panel.factory import get_panel_provider
from renewsync.services.extraction import ExtractionResult, RawCapture, extract_credentials
from renewsync.services.resilience import RetryPolicy, retry_async
from renewsync.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

GENERATE_LABELS = ("gerar iptv", "gerar teste", "generate")
CONFIRM_LABELS = ("confirmar", "confirm", "ok")


class DriverState(str, Enum):
    INIT = "INIT"
    AUTHENTICATE = "AUTHENTICATE"
    NAVIGATE = "NAVIGATE"
    TRIGGER_GENERATION = "TRIGGER_GENERATION"
    CONFIRM_STEP_1 = "CONFIRM_STEP_1"
    CONFIRM_STEP_2 = "CONFIRM_STEP_2"
    AWAIT_RESULT = "AWAIT_RESULT"
    EXTRACT = "EXTRACT"
    CLEANUP = "CLEANUP"
    DONE = "DONE"


@dataclass(frozen=True)
class SystemDescriptor:
    id: str
    system_id: str


@dataclass(frozen=True)
class PanelCredentials:
    username: str
    password: str = field(repr=False)


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class DriverTrace:
    # Diagnostics for one run: visited states and whether generation was clicked.
    system_id: str
    states: list[DriverState] = field(default_factory=list)
    generation_triggered: bool = False

    def enter(self, state: DriverState) -> None:
        self.states.append(state)


InterventionHook = Callable[[SystemDescriptor], Awaitable[None]]


def _is_retryable_navigation(exc: Exception) -> bool:
    return isinstance(exc, (TransientNetworkError, NavigationTimeoutError, asyncio.TimeoutError))


class AutomationDriver:
    """Run the panel credential-generation workflow for one system.

    The generate/confirm/extract subflow is not idempotent: it runs at most
    once per call, and any error raised after the generate click carries
    ``generation_triggered=True`` so callers never blindly retry it.
    """

    def __init__(
        self,
        provider: PanelProvider | None = None,
        *,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        on_intervention: InterventionHook | None = None,
    ) -> None:
        self._provider = provider or get_panel_provider()
        self._settings = settings or get_settings()
        self._sleep = sleep
        self._clock = clock
        self._on_intervention = on_intervention

    async def run(
        self,
        system: SystemDescriptor,
        credentials: PanelCredentials,
        *,
        cancel_token: CancellationToken | None = None,
        trace: DriverTrace | None = None,
    ) -> ExtractionResult:
        trace = trace or DriverTrace(system_id=system.system_id)
        start = time.monotonic()
        success = False
        try:
            async with self._provider.session(system.system_id) as page:
                try:
                    result = await self._drive(page, system, credentials, cancel_token, trace)
                finally:
                    await self._cleanup(page, system, trace)
            trace.enter(DriverState.DONE)
            success = True
            return result
        finally:
            record_external_call(
                integration="panel",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

    async def _drive(
        self,
        page: PanelPage,
        system: SystemDescriptor,
        credentials: PanelCredentials,
        cancel_token: CancellationToken | None,
        trace: DriverTrace,
    ) -> ExtractionResult:
        settings = self._settings
        trace.enter(DriverState.INIT)
        self._check_cancelled(cancel_token, system)

        trace.enter(DriverState.AUTHENTICATE)
        await self._authenticate(page, system, credentials)
        self._check_cancelled(cancel_token, system)

        trace.enter(DriverState.NAVIGATE)
        await self._load(page, urljoin(settings.panel_base_url, settings.panel_generate_path))
        # Last safe point: nothing has been provisioned yet.
        self._check_cancelled(cancel_token, system)

        trace.enter(DriverState.TRIGGER_GENERATION)
        if not await page.click_action(GENERATE_LABELS, timeout_s=settings.panel_nav_timeout_s):
            raise ActionNotFoundError("generate action missing")
        trace.generation_triggered = True
        logger.info("panel_generation_triggered system_id=%s", system.system_id)

        try:
            return await self._finish_generation(page, trace)
        except AutomationError as exc:
            exc.generation_triggered = True
            raise

    async def _finish_generation(self, page: PanelPage, trace: DriverTrace) -> ExtractionResult:
        settings = self._settings
        trace.enter(DriverState.CONFIRM_STEP_1)
        await self._sleep(settings.panel_step_settle_s)
        if not await page.click_action(CONFIRM_LABELS, timeout_s=settings.panel_nav_timeout_s, newest=True):
            raise ActionNotFoundError("first confirmation missing", generation_triggered=True)

        trace.enter(DriverState.CONFIRM_STEP_2)
        await self._sleep(settings.panel_step_settle_s)
        if not await page.click_action(CONFIRM_LABELS, timeout_s=settings.panel_nav_timeout_s, newest=True):
            raise ActionNotFoundError("second confirmation missing", generation_triggered=True)

        trace.enter(DriverState.AWAIT_RESULT)
        text = await self._await_result(page)

        trace.enter(DriverState.EXTRACT)
        return extract_credentials(RawCapture(text=text, source="panel"))

    async def _authenticate(
        self,
        page: PanelPage,
        system: SystemDescriptor,
        credentials: PanelCredentials,
    ) -> None:
        await self._load(page, self._settings.panel_base_url)
        if await page.is_authenticated():
            return
        await page.submit_login(credentials.username, credentials.password)
        await self._sleep(self._settings.panel_step_settle_s)
        if await page.is_authenticated():
            return
        if not await page.has_challenge():
            raise LoginFailedError("panel rejected the session credentials")
        await self._await_manual_intervention(page, system)

    async def _await_manual_intervention(self, page: PanelPage, system: SystemDescriptor) -> None:
        # Bounded wait for a human to clear the challenge in the persisted browser profile.
        grace_s = self._settings.panel_manual_grace_s
        logger.warning(
            "panel_manual_intervention_required system_id=%s grace_s=%s",
            system.system_id,
            grace_s,
        )
        increment_counter("panel_manual_interventions_total")
        if self._on_intervention is not None:
            await self._on_intervention(system)
        deadline = self._clock() + grace_s
        while self._clock() < deadline:
            await self._sleep(self._settings.panel_step_settle_s)
            if await page.is_authenticated():
                logger.info("panel_manual_intervention_resolved system_id=%s", system.system_id)
                return
        raise AuthenticationRequiredError(
            f"challenge not cleared within {grace_s:g}s"
        )

    async def _load(self, page: PanelPage, url: str) -> None:
        settings = self._settings
        policy = RetryPolicy(
            # Leave headroom over the page timeout so the provider reports its own timeout first.
            timeout_ms=int(settings.panel_nav_timeout_s * 1000) + 5000,
            max_attempts=settings.panel_nav_max_attempts,
            backoff_ms=settings.panel_nav_backoff_ms,
        )

        async def _open() -> None:
            await page.open(url, timeout_s=settings.panel_nav_timeout_s)

        try:
            await retry_async(_open, policy=policy, retryable=_is_retryable_navigation, sleep=self._sleep)
        except asyncio.TimeoutError as exc:
            raise NavigationTimeoutError(f"page load timed out: {url}") from exc

    async def _await_result(self, page: PanelPage) -> str:
        settings = self._settings
        deadline = self._clock() + settings.panel_result_timeout_s
        while True:
            text = await page.read_result_text()
            if text and text.strip():
                return text
            if self._clock() >= deadline:
                raise NavigationTimeoutError(
                    f"result text did not appear within {settings.panel_result_timeout_s:g}s",
                    generation_triggered=True,
                )
            await self._sleep(settings.panel_result_poll_interval_s)

    async def _cleanup(self, page: PanelPage, system: SystemDescriptor, trace: DriverTrace) -> None:
        trace.enter(DriverState.CLEANUP)
        try:
            await page.dismiss_overlays()
        except Exception as exc:  # noqa: BLE001 - cleanup must not mask the run outcome
            logger.warning("panel_cleanup_failed system_id=%s", system.system_id, exc_info=exc)

    def _check_cancelled(self, cancel_token: CancellationToken | None, system: SystemDescriptor) -> None:
        if cancel_token is not None and cancel_token.cancelled:
            logger.info("panel_run_cancelled system_id=%s", system.system_id)
            raise AutomationCancelledError("cancelled before generation")
