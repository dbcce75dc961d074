from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from pathlib import Path
import re
from typing import AsyncIterator, Sequence

from playwright.async_api import (
    BrowserContext,
    Error as PlaywrightError,
    Page,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from renewsync.core.config import get_settings
from renewsync.core.errors import NavigationTimeoutError, TransientNetworkError
from renewsync.providers.panel.base import action_name_pattern


logger = logging.getLogger(__name__)

_DIALOG_SELECTOR = "[role=dialog], .modal-content, .swal2-popup"
_CLOSE_SELECTOR = ".swal2-close, .modal .close, button[aria-label=Close], button[aria-label=Fechar]"
_CHALLENGE_SELECTOR = (
    "iframe[src*='recaptcha'], iframe[src*='hcaptcha'], iframe[src*='turnstile'], "
    "#challenge-form, .g-recaptcha, .h-captcha"
)
# Result modals carry credential labels; confirmation dialogs do not.
_RESULT_MARKER_RE = re.compile(r"usu[áa]rio|username|login|senha|password", re.IGNORECASE)


def _safe_profile_name(system_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", system_id) or "default"


class PlaywrightPanelPage:
    def __init__(self, page: Page) -> None:
        self._page = page

    async def open(self, url: str, *, timeout_s: float) -> None:
        try:
            await self._page.goto(url, timeout=timeout_s * 1000.0, wait_until="domcontentloaded")
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeoutError(f"page load timed out: {url}") from exc
        except PlaywrightError as exc:
            raise TransientNetworkError(f"page load failed: {url}") from exc

    async def is_authenticated(self) -> bool:
        # The panel renders a password field only on its login form.
        try:
            return await self._page.locator("input[type=password]").count() == 0
        except PlaywrightError as exc:
            raise TransientNetworkError("login state probe failed") from exc

    async def submit_login(self, username: str, password: str) -> None:
        try:
            user_field = self._page.locator(
                "input[name*=user i], input[name*=login i], input[type=email], input[type=text]"
            ).first
            await user_field.fill(username)
            await self._page.locator("input[type=password]").first.fill(password)
            submit = self._page.locator("button[type=submit], input[type=submit]").first
            if await submit.count():
                await submit.click()
            else:
                await self._page.keyboard.press("Enter")
            await self._page.wait_for_load_state("domcontentloaded")
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeoutError("login submit timed out") from exc
        except PlaywrightError as exc:
            raise TransientNetworkError("login submit failed") from exc

    async def has_challenge(self) -> bool:
        try:
            return await self._page.locator(_CHALLENGE_SELECTOR).count() > 0
        except PlaywrightError as exc:
            raise TransientNetworkError("challenge probe failed") from exc

    async def click_action(self, labels: Sequence[str], *, timeout_s: float, newest: bool = False) -> bool:
        # Match buttons by whole accessible name; a missing button reports False instead of raising.
        matches = self._page.get_by_role("button", name=action_name_pattern(labels))
        button = matches.last if newest else matches.first
        try:
            await button.wait_for(state="visible", timeout=timeout_s * 1000.0)
        except PlaywrightTimeoutError:
            return False
        except PlaywrightError as exc:
            raise TransientNetworkError("action lookup failed") from exc
        try:
            await button.click(timeout=timeout_s * 1000.0)
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeoutError("action click timed out") from exc
        except PlaywrightError as exc:
            raise TransientNetworkError("action click failed") from exc
        return True

    async def read_result_text(self) -> str | None:
        try:
            dialogs = self._page.locator(_DIALOG_SELECTOR)
            for index in range(await dialogs.count()):
                dialog = dialogs.nth(index)
                if not await dialog.is_visible():
                    continue
                text = await dialog.inner_text()
                if text and _RESULT_MARKER_RE.search(text):
                    return text
        except PlaywrightError as exc:
            raise TransientNetworkError("result read failed") from exc
        return None

    async def dismiss_overlays(self) -> None:
        await self._page.keyboard.press("Escape")
        close_buttons = self._page.locator(_CLOSE_SELECTOR)
        for index in range(await close_buttons.count()):
            button = close_buttons.nth(index)
            if await button.is_visible():
                await button.click(timeout=2000)


class PlaywrightPanelProvider:
    def __init__(
        self,
        *,
        user_data_dir: str | None = None,
        headless: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._user_data_dir = Path(user_data_dir or settings.panel_user_data_dir)
        self._headless = settings.panel_headless if headless is None else headless

    def profile_dir(self, system_id: str) -> Path:
        # One persisted browser profile per system keeps its panel login alive between runs.
        return self._user_data_dir / _safe_profile_name(system_id)

    @asynccontextmanager
    async def session(self, system_id: str) -> AsyncIterator[PlaywrightPanelPage]:
        profile = self.profile_dir(system_id)
        profile.mkdir(parents=True, exist_ok=True)
        async with async_playwright() as playwright:
            try:
                context: BrowserContext = await playwright.chromium.launch_persistent_context(
                    str(profile),
                    headless=self._headless,
                )
            except PlaywrightError as exc:
                raise TransientNetworkError("browser launch failed") from exc
            try:
                page = context.pages[0] if context.pages else await context.new_page()
                yield PlaywrightPanelPage(page)
            finally:
                try:
                    await context.close()
                except PlaywrightError as exc:
                    logger.warning("panel_context_close_failed system_id=%s", system_id, exc_info=exc)
