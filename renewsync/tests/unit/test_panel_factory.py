from __future__ import annotations

import pytest

from renewsync.core.config import get_settings
from renewsync.core.errors import PanelConfigError
from renewsync.providers.panel.factory import get_panel_provider
from renewsync.providers.panel.fake import FakePanelProvider
from renewsync.providers.panel.playwright_panel import PlaywrightPanelProvider


def _apply_env(monkeypatch, **overrides: str) -> None:
    for key, value in overrides.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()


def test_factory_selects_configured_provider(monkeypatch, tmp_path) -> None:
    _apply_env(monkeypatch, PANEL_PROVIDER="fake")
    assert isinstance(get_panel_provider(), FakePanelProvider)

    _apply_env(monkeypatch, PANEL_PROVIDER="playwright", PANEL_USER_DATA_DIR=str(tmp_path))
    provider = get_panel_provider()
    assert isinstance(provider, PlaywrightPanelProvider)
    # One persistent browser profile per system.
    assert provider.profile_dir("4242") == tmp_path / "4242"


def test_factory_rejects_unknown_provider(monkeypatch) -> None:
    _apply_env(monkeypatch, PANEL_PROVIDER="selenium")

    with pytest.raises(PanelConfigError):
        get_panel_provider()
