from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, field_validator

from renewsync.core.timeutil import from_unix_seconds


PARTNER_STATUS_ACTIVE = "Active"
PARTNER_STATUS_INACTIVE = "Inactive"


class PartnerUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    username: str
    password: str = ""
    status: str = PARTNER_STATUS_ACTIVE
    # Unix seconds encoded as a string.
    exp_date: str = ""
    system: int | None = None
    last_access: str | None = None

    @field_validator("exp_date", mode="before")
    @classmethod
    def _coerce_exp_date(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @property
    def is_active(self) -> bool:
        return self.status == PARTNER_STATUS_ACTIVE

    @property
    def expires_at(self) -> datetime | None:
        return from_unix_seconds(self.exp_date)


class PartnerSystem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    system_id: str
    username: str
    password: str = ""

    @field_validator("system_id", mode="before")
    @classmethod
    def _coerce_system_id(cls, value: Any) -> str:
        return str(value)


class PartnerApi(Protocol):
    async def list_users(self) -> list[PartnerUser]:
        ...

    async def create_user(
        self, *, username: str, password: str, status: str, exp_date: str, system: int | None
    ) -> PartnerUser:
        ...

    async def update_user(self, user_id: int, fields: dict[str, Any]) -> None:
        ...

    async def delete_user(self, user_id: int) -> None:
        ...

    async def list_systems(self) -> list[PartnerSystem]:
        ...

    async def create_system(self, *, system_id: str, username: str, password: str) -> None:
        ...

    async def update_system(self, system_id: str, fields: dict[str, Any]) -> None:
        ...
