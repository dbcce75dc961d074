from __future__ import annotations

from renewsync.core.config import get_settings
from renewsync.core.errors import PanelConfigError
from renewsync.providers.panel.fake import FakePanelProvider
from renewsync.providers.panel.playwright_panel import PlaywrightPanelProvider


def get_panel_provider():
    settings = get_settings()
    provider = (settings.panel_provider or "").lower()

    if provider == "fake":
        # Scripted panel for dry runs; no browser is launched.
        return FakePanelProvider()
    if provider == "playwright":
        return PlaywrightPanelProvider()

    raise PanelConfigError(f"Unsupported panel provider: {provider}")
