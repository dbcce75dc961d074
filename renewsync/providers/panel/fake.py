from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Sequence

from renewsync.providers.panel.base import action_name_pattern


_STEPS = ("generate", "confirm_1", "confirm_2")
_DEFAULT_BUTTONS = {"generate": "Gerar IPTV", "confirm_1": "Confirmar", "confirm_2": "OK"}


@dataclass
class FakePanelScript:
    # Scripted panel behavior for one system; defaults model a clean renewal.
    authenticated: bool = True
    login_succeeds: bool = True
    challenge: bool = False
    # is_authenticated polls until a human "solves" the challenge; None never resolves.
    challenge_resolves_after: int | None = None
    open_failures: list[Exception] = field(default_factory=list)
    missing_steps: set[str] = field(default_factory=set)
    click_errors: dict[str, Exception] = field(default_factory=dict)
    result_text: str | None = (
        "USUÁRIO: 1234567890\nSENHA: AB12CD34\nVENCIMENTO: 10/10/2025 10:00:00"
    )
    result_after_polls: int = 0
    dismiss_error: Exception | None = None
    # Blocks the generate click until set; lets tests hold a run in flight.
    hold: asyncio.Event | None = None
    # Accessible name shown on each step's button; clicks only land on a whole-name match.
    button_labels: dict[str, str] = field(default_factory=lambda: dict(_DEFAULT_BUTTONS))


class FakePanelPage:
    def __init__(self, provider: "FakePanelProvider", system_id: str, script: FakePanelScript) -> None:
        self._provider = provider
        self._system_id = system_id
        self._script = script
        self._authenticated = script.authenticated
        self._challenge_polls = 0
        self._result_polls = 0
        self._clicks = 0

    def _log(self, action: str) -> None:
        self._provider.calls.append((self._system_id, action))

    async def open(self, url: str, *, timeout_s: float) -> None:
        self._log(f"open:{url}")
        if self._script.open_failures:
            raise self._script.open_failures.pop(0)

    async def is_authenticated(self) -> bool:
        if not self._authenticated and self._script.challenge:
            self._challenge_polls += 1
            resolves_after = self._script.challenge_resolves_after
            if resolves_after is not None and self._challenge_polls > resolves_after:
                self._authenticated = True
        return self._authenticated

    async def submit_login(self, username: str, password: str) -> None:
        self._log("login")
        if self._script.login_succeeds and not self._script.challenge:
            self._authenticated = True

    async def has_challenge(self) -> bool:
        return self._script.challenge

    async def click_action(self, labels: Sequence[str], *, timeout_s: float, newest: bool = False) -> bool:
        step = _STEPS[min(self._clicks, len(_STEPS) - 1)]
        shown = self._script.button_labels.get(step, _DEFAULT_BUTTONS[step])
        if step in self._script.missing_steps or not action_name_pattern(labels).match(shown):
            self._log(f"missing:{step}")
            return False
        if step in self._script.click_errors:
            raise self._script.click_errors[step]
        if step == "generate" and self._script.hold is not None:
            await self._script.hold.wait()
        self._clicks += 1
        self._log(f"click:{step}")
        return True

    async def read_result_text(self) -> str | None:
        self._result_polls += 1
        if self._result_polls <= self._script.result_after_polls:
            return None
        return self._script.result_text

    async def dismiss_overlays(self) -> None:
        self._log("dismiss")
        if self._script.dismiss_error is not None:
            raise self._script.dismiss_error


class FakePanelProvider:
    def __init__(
        self,
        scripts: dict[str, FakePanelScript] | None = None,
        *,
        default: FakePanelScript | None = None,
    ) -> None:
        self.scripts = scripts or {}
        self.default = default or FakePanelScript()
        self.calls: list[tuple[str, str]] = []
        self.sessions_opened: list[str] = []
        self.active: dict[str, int] = {}
        self.max_active_per_system = 0
        self.max_active_total = 0

    def script_for(self, system_id: str) -> FakePanelScript:
        return self.scripts.get(system_id, self.default)

    @asynccontextmanager
    async def session(self, system_id: str) -> AsyncIterator[FakePanelPage]:
        self.sessions_opened.append(system_id)
        self.active[system_id] = self.active.get(system_id, 0) + 1
        self.max_active_per_system = max(self.max_active_per_system, self.active[system_id])
        self.max_active_total = max(self.max_active_total, sum(self.active.values()))
        try:
            yield FakePanelPage(self, system_id, self.script_for(system_id))
        finally:
            self.active[system_id] -= 1
