from __future__ import annotations

import re
from typing import AsyncContextManager, Protocol, Sequence


def action_name_pattern(labels: Sequence[str]) -> re.Pattern[str]:
    # Whole accessible name only: "ok" must not match "Token" or "Facebook".
    alternatives = "|".join(re.escape(label) for label in labels)
    return re.compile(rf"^\s*(?:{alternatives})\s*$", re.IGNORECASE)


class PanelPage(Protocol):
    async def open(self, url: str, *, timeout_s: float) -> None:
        ...

    async def is_authenticated(self) -> bool:
        ...

    async def submit_login(self, username: str, password: str) -> None:
        ...

    async def has_challenge(self) -> bool:
        ...

    async def click_action(self, labels: Sequence[str], *, timeout_s: float, newest: bool = False) -> bool:
        # newest picks the last matching button, i.e. the most recently stacked dialog.
        ...

    async def read_result_text(self) -> str | None:
        ...

    async def dismiss_overlays(self) -> None:
        ...


class PanelProvider(Protocol):
    def session(self, system_id: str) -> AsyncContextManager[PanelPage]:
        ...
