from __future__ import annotations

from typing import Any

from renewsync.providers.partner.base import PARTNER_STATUS_ACTIVE, PartnerSystem, PartnerUser


class FakePartnerClient:
    def __init__(
        self,
        *,
        users: list[PartnerUser] | None = None,
        systems: list[PartnerSystem] | None = None,
    ) -> None:
        # In-memory partner state so tests can assert on writes without HTTP.
        self.users: dict[int, PartnerUser] = {user.id: user for user in users or []}
        self.systems: dict[str, PartnerSystem] = {system.system_id: system for system in systems or []}
        self.calls: list[tuple[str, Any]] = []
        self.fail_with: Exception | None = None
        self._next_id = max(self.users, default=0) + 1

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def list_users(self) -> list[PartnerUser]:
        self._maybe_fail()
        return sorted(self.users.values(), key=lambda user: user.id)

    async def create_user(
        self,
        *,
        username: str,
        password: str,
        status: str = PARTNER_STATUS_ACTIVE,
        exp_date: str = "",
        system: int | None = None,
    ) -> PartnerUser:
        self._maybe_fail()
        user = PartnerUser(
            id=self._next_id,
            username=username,
            password=password,
            status=status,
            exp_date=exp_date,
            system=system,
        )
        self._next_id += 1
        self.users[user.id] = user
        self.calls.append(("create_user", user.id))
        return user

    async def update_user(self, user_id: int, fields: dict[str, Any]) -> None:
        self._maybe_fail()
        current = self.users[user_id]
        self.users[user_id] = current.model_copy(update=fields)
        self.calls.append(("update_user", user_id))

    async def delete_user(self, user_id: int) -> None:
        self._maybe_fail()
        self.users.pop(user_id, None)
        self.calls.append(("delete_user", user_id))

    async def list_systems(self) -> list[PartnerSystem]:
        self._maybe_fail()
        return sorted(self.systems.values(), key=lambda system: system.system_id)

    async def create_system(self, *, system_id: str, username: str, password: str) -> None:
        self._maybe_fail()
        self.systems[system_id] = PartnerSystem(system_id=system_id, username=username, password=password)
        self.calls.append(("create_system", system_id))

    async def update_system(self, system_id: str, fields: dict[str, Any]) -> None:
        self._maybe_fail()
        current = self.systems[system_id]
        self.systems[system_id] = current.model_copy(update=fields)
        self.calls.append(("update_system", system_id))
