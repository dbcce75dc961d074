from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
import logging
from typing import Any, Callable, Iterable
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from renewsync.core.config import Settings, get_settings
from renewsync.core.errors import (
    ConcurrencyConflictError,
    DatabaseError,
    IntegrationUnavailableError,
    PartnerApiError,
    StaleSnapshotError,
)
from renewsync.core.timeutil import as_utc, to_unix_seconds, utc_now
from renewsync.domain.models import POINT_SOURCE_BOTH, POINT_STATUS_ACTIVE
from renewsync.persistence.db import SessionLocal
from renewsync.persistence.repos import points as points_repo
from renewsync.persistence.repos import systems as systems_repo
from renewsync.providers.partner.base import (
    PARTNER_STATUS_ACTIVE,
    PARTNER_STATUS_INACTIVE,
    PartnerApi,
    PartnerSystem,
    PartnerUser,
)
from renewsync.services.renewal.controller import RenewalQueueController
from renewsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class EntityType(str, Enum):
    SYSTEM = "system"
    POINT = "point"


class Classification(str, Enum):
    LOCAL_ONLY = "local_only"
    API_ONLY = "api_only"
    BOTH_IN_SYNC = "both_in_sync"
    BOTH_DIVERGENT = "both_divergent"


@dataclass(frozen=True)
class LocalSystemRecord:
    id: str
    system_id: str
    panel_username: str
    panel_password: str
    active_point_count: int


@dataclass(frozen=True)
class LocalPointRecord:
    id: str
    system_local_id: str
    system_external_id: str
    username: str
    password: str
    expires_at: datetime | None
    status: str
    partner_user_id: int | None = None


@dataclass(frozen=True)
class LocalSnapshot:
    systems: tuple[LocalSystemRecord, ...]
    points: tuple[LocalPointRecord, ...]
    taken_at: datetime


@dataclass(frozen=True)
class ApiSnapshot:
    systems: tuple[PartnerSystem, ...]
    users: tuple[PartnerUser, ...]
    taken_at: datetime


@dataclass(frozen=True)
class ReconciliationEntry:
    entity_type: EntityType
    key: str
    classification: Classification
    divergent_fields: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "key": self.key,
            "classification": self.classification.value,
            "divergent_fields": list(self.divergent_fields),
        }


@dataclass(frozen=True)
class ReconciliationReport:
    entries: tuple[ReconciliationEntry, ...]
    generated_at: datetime
    local_taken_at: datetime
    api_taken_at: datetime

    @property
    def divergent(self) -> tuple[ReconciliationEntry, ...]:
        return tuple(entry for entry in self.entries if entry.classification != Classification.BOTH_IN_SYNC)

    def counts(self) -> dict[str, int]:
        counts = {classification.value: 0 for classification in Classification}
        for entry in self.entries:
            counts[entry.classification.value] += 1
        return counts

    def as_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "local_taken_at": self.local_taken_at.isoformat(),
            "api_taken_at": self.api_taken_at.isoformat(),
            "counts": self.counts(),
            "entries": [entry.as_dict() for entry in self.entries],
        }


@dataclass(frozen=True)
class SyncOutcome:
    entity_type: EntityType
    key: str
    outcome: str
    detail: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "key": self.key,
            "outcome": self.outcome,
            "detail": self.detail,
        }


def _partner_status(status: str) -> str:
    return PARTNER_STATUS_ACTIVE if status == POINT_STATUS_ACTIVE else PARTNER_STATUS_INACTIVE


def _expiry_differs(local: datetime | None, remote: datetime | None, tolerance_s: int) -> bool:
    if local is None or remote is None:
        return local is not remote
    return abs((as_utc(local) - as_utc(remote)).total_seconds()) > tolerance_s


def _classify(
    entity_type: EntityType,
    key: str,
    *,
    in_local: bool,
    in_api: bool,
    divergent_fields: Iterable[str] = (),
) -> ReconciliationEntry:
    if in_local and not in_api:
        return ReconciliationEntry(entity_type, key, Classification.LOCAL_ONLY)
    if in_api and not in_local:
        return ReconciliationEntry(entity_type, key, Classification.API_ONLY)
    fields = tuple(sorted(divergent_fields))
    classification = Classification.BOTH_DIVERGENT if fields else Classification.BOTH_IN_SYNC
    return ReconciliationEntry(entity_type, key, classification, fields)


def reconcile(
    local: LocalSnapshot,
    api: ApiSnapshot,
    *,
    expiry_tolerance_s: int,
) -> tuple[ReconciliationEntry, ...]:
    """Classify systems and points across the local store and the partner API.

    Pure and deterministic: entries are sorted by (entity_type, key), so equal
    snapshots always produce equal results.
    """
    entries: list[ReconciliationEntry] = []

    active_by_system: dict[str, int] = {}
    for user in api.users:
        if user.is_active and user.system is not None:
            active_by_system[str(user.system)] = active_by_system.get(str(user.system), 0) + 1

    local_systems = {record.system_id: record for record in sorted(local.systems, key=lambda r: r.id)}
    api_systems = {record.system_id: record for record in api.systems}
    for key in local_systems.keys() | api_systems.keys():
        local_system = local_systems.get(key)
        api_system = api_systems.get(key)
        fields: list[str] = []
        if local_system is not None and api_system is not None:
            if local_system.active_point_count != active_by_system.get(key, 0):
                fields.append("active_point_count")
            if local_system.panel_username != api_system.username:
                fields.append("username")
            if local_system.panel_password != api_system.password:
                fields.append("password")
        entries.append(
            _classify(
                EntityType.SYSTEM,
                key,
                in_local=local_system is not None,
                in_api=api_system is not None,
                divergent_fields=fields,
            )
        )

    local_points: dict[str, LocalPointRecord] = {}
    for record in sorted(local.points, key=lambda r: r.id):
        local_points.setdefault(record.username, record)
    api_users: dict[str, PartnerUser] = {}
    for user in sorted(api.users, key=lambda u: u.id):
        api_users.setdefault(user.username, user)
    for key in local_points.keys() | api_users.keys():
        local_point = local_points.get(key)
        api_user = api_users.get(key)
        fields = []
        if local_point is not None and api_user is not None:
            if _expiry_differs(local_point.expires_at, api_user.expires_at, expiry_tolerance_s):
                fields.append("expires_at")
            if _partner_status(local_point.status) != api_user.status:
                fields.append("status")
            if local_point.password != api_user.password:
                fields.append("password")
        entries.append(
            _classify(
                EntityType.POINT,
                key,
                in_local=local_point is not None,
                in_api=api_user is not None,
                divergent_fields=fields,
            )
        )

    entries.sort(key=lambda entry: (entry.entity_type.value, entry.key))
    return tuple(entries)


@dataclass
class _ReportCache:
    report: ReconciliationReport | None = None
    expires_at: datetime | None = None


class ReconciliationService:
    def __init__(
        self,
        *,
        partner_client: PartnerApi | None,
        controller: RenewalQueueController,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._partner = partner_client
        self._controller = controller
        self._session_factory = session_factory or SessionLocal
        self._settings = settings or get_settings()
        self._clock = clock
        self._cache = _ReportCache()

    def _require_partner(self) -> PartnerApi:
        if self._partner is None:
            raise IntegrationUnavailableError("partner API is not configured")
        return self._partner

    async def take_local_snapshot(self) -> LocalSnapshot:
        # Plain reads; reconciliation never takes the per-system locks.
        async with self._session_factory() as session:
            systems = await systems_repo.list_systems(session)
            points = await points_repo.list_points(session)
        external_ids = {system.id: system.system_id for system in systems}
        return LocalSnapshot(
            systems=tuple(
                LocalSystemRecord(
                    id=system.id,
                    system_id=system.system_id,
                    panel_username=system.panel_username,
                    panel_password=system.panel_password,
                    active_point_count=int(system.active_point_count or 0),
                )
                for system in systems
            ),
            points=tuple(
                LocalPointRecord(
                    id=point.id,
                    system_local_id=point.system_id,
                    system_external_id=external_ids.get(point.system_id, ""),
                    username=point.username,
                    password=point.password,
                    expires_at=as_utc(point.expires_at),
                    status=point.status,
                    partner_user_id=point.partner_user_id,
                )
                for point in points
            ),
            taken_at=self._clock(),
        )

    async def take_api_snapshot(self) -> ApiSnapshot:
        partner = self._require_partner()
        systems = await partner.list_systems()
        users = await partner.list_users()
        return ApiSnapshot(systems=tuple(systems), users=tuple(users), taken_at=self._clock())

    def _check_fresh(self, taken_at: datetime, now: datetime, label: str) -> None:
        ttl = timedelta(seconds=self._settings.reconciliation_snapshot_ttl_s)
        if now - taken_at > ttl:
            raise StaleSnapshotError(f"{label} snapshot is older than {ttl.total_seconds():g}s")

    def build_report(self, local: LocalSnapshot, api: ApiSnapshot) -> ReconciliationReport:
        now = self._clock()
        self._check_fresh(local.taken_at, now, "local")
        self._check_fresh(api.taken_at, now, "api")
        entries = reconcile(
            local,
            api,
            expiry_tolerance_s=self._settings.reconciliation_expiry_tolerance_s,
        )
        report = ReconciliationReport(
            entries=entries,
            generated_at=now,
            local_taken_at=local.taken_at,
            api_taken_at=api.taken_at,
        )
        divergent = report.divergent
        if divergent:
            increment_counter("reconciliation_divergence_total", len(divergent))
            logger.warning(
                "reconciliation_divergence_detected divergent=%s counts=%s",
                len(divergent),
                report.counts(),
            )
        return report

    async def report(self, *, refresh: bool = False) -> ReconciliationReport:
        now = self._clock()
        cached = self._cache.report
        if not refresh and cached is not None and self._cache.expires_at and now < self._cache.expires_at:
            return cached
        local = await self.take_local_snapshot()
        api = await self.take_api_snapshot()
        report = self.build_report(local, api)
        self._cache.report = report
        self._cache.expires_at = report.generated_at + timedelta(
            seconds=self._settings.reconciliation_snapshot_ttl_s
        )
        increment_counter("reconciliation_reports_total")
        return report

    def invalidate(self) -> None:
        self._cache.report = None
        self._cache.expires_at = None

    async def push_points(
        self,
        usernames: Iterable[str] | None = None,
        *,
        delete_api_only: bool = False,
    ) -> list[SyncOutcome]:
        """Create or update partner users from local active points."""
        partner = self._require_partner()
        wanted = set(usernames) if usernames is not None else None
        local = await self.take_local_snapshot()
        api = await self.take_api_snapshot()
        api_by_username = {user.username: user for user in sorted(api.users, key=lambda u: u.id)}
        outcomes: list[SyncOutcome] = []

        for point in sorted(local.points, key=lambda p: (p.username, p.id)):
            if point.status != POINT_STATUS_ACTIVE:
                continue
            if wanted is not None and point.username not in wanted:
                continue
            try:
                async with self._controller.system_guard(point.system_local_id):
                    outcome = await self._push_point(partner, point, api_by_username.get(point.username))
            except ConcurrencyConflictError as exc:
                outcome = SyncOutcome(EntityType.POINT, point.username, "conflict", str(exc))
            except PartnerApiError as exc:
                outcome = SyncOutcome(EntityType.POINT, point.username, "failed", str(exc))
            outcomes.append(outcome)

        if delete_api_only:
            local_usernames = {point.username for point in local.points}
            for user in sorted(api.users, key=lambda u: u.id):
                if user.username in local_usernames:
                    continue
                if wanted is not None and user.username not in wanted:
                    continue
                try:
                    await partner.delete_user(user.id)
                    outcomes.append(SyncOutcome(EntityType.POINT, user.username, "deleted"))
                except PartnerApiError as exc:
                    outcomes.append(SyncOutcome(EntityType.POINT, user.username, "failed", str(exc)))

        self.invalidate()
        logger.info("reconciliation_push_completed outcomes=%s", _summarize(outcomes))
        return outcomes

    async def _push_point(
        self,
        partner: PartnerApi,
        point: LocalPointRecord,
        existing: PartnerUser | None,
    ) -> SyncOutcome:
        fields = {
            "username": point.username,
            "password": point.password,
            "status": _partner_status(point.status),
            "exp_date": to_unix_seconds(point.expires_at),
        }
        if existing is None:
            external = point.system_external_id
            created = await partner.create_user(
                system=int(external) if external.isdigit() else None,
                **fields,
            )
            partner_user_id = created.id
            outcome = "created"
        else:
            partner_user_id = existing.id
            changed = {key: value for key, value in fields.items() if getattr(existing, key) != value}
            if changed:
                await partner.update_user(existing.id, changed)
                outcome = "updated"
            else:
                outcome = "unchanged"
        await self._mark_point_synced(point.id, partner_user_id)
        return SyncOutcome(EntityType.POINT, point.username, outcome)

    async def _mark_point_synced(self, point_id: str, partner_user_id: int) -> None:
        async with self._session_factory() as session:
            try:
                row = await points_repo.get_point(session, point_id)
                if row is None:
                    return
                row.partner_user_id = partner_user_id
                row.source = POINT_SOURCE_BOTH
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise DatabaseError("failed to record point sync") from exc

    async def push_systems(self, system_ids: Iterable[str] | None = None) -> list[SyncOutcome]:
        """Publish local panel credentials to the partner's system list."""
        partner = self._require_partner()
        wanted = set(system_ids) if system_ids is not None else None
        local = await self.take_local_snapshot()
        remote_by_id = {system.system_id: system for system in await partner.list_systems()}
        outcomes: list[SyncOutcome] = []
        for system in sorted(local.systems, key=lambda s: s.system_id):
            if wanted is not None and system.system_id not in wanted:
                continue
            remote = remote_by_id.get(system.system_id)
            try:
                async with self._controller.system_guard(system.id):
                    if remote is None:
                        await partner.create_system(
                            system_id=system.system_id,
                            username=system.panel_username,
                            password=system.panel_password,
                        )
                        outcome = SyncOutcome(EntityType.SYSTEM, system.system_id, "created")
                    else:
                        changed = {
                            key: value
                            for key, value in (
                                ("username", system.panel_username),
                                ("password", system.panel_password),
                            )
                            if getattr(remote, key) != value
                        }
                        if changed:
                            await partner.update_system(system.system_id, changed)
                        outcome = SyncOutcome(
                            EntityType.SYSTEM, system.system_id, "updated" if changed else "unchanged"
                        )
            except ConcurrencyConflictError as exc:
                outcome = SyncOutcome(EntityType.SYSTEM, system.system_id, "conflict", str(exc))
            except PartnerApiError as exc:
                outcome = SyncOutcome(EntityType.SYSTEM, system.system_id, "failed", str(exc))
            outcomes.append(outcome)
        self.invalidate()
        logger.info("reconciliation_push_systems_completed outcomes=%s", _summarize(outcomes))
        return outcomes

    async def pull_systems(self) -> list[SyncOutcome]:
        """Upsert local systems from the partner's system list."""
        partner = self._require_partner()
        outcomes: list[SyncOutcome] = []
        for remote in sorted(await partner.list_systems(), key=lambda s: s.system_id):
            async with self._session_factory() as session:
                existing = await systems_repo.get_system_by_external_id(session, remote.system_id)
            try:
                if existing is None:
                    outcome = await self._create_local_system(remote)
                else:
                    async with self._controller.system_guard(existing.id):
                        outcome = await self._update_local_system(existing.id, remote)
            except ConcurrencyConflictError as exc:
                outcome = SyncOutcome(EntityType.SYSTEM, remote.system_id, "conflict", str(exc))
            outcomes.append(outcome)
        self.invalidate()
        logger.info("reconciliation_pull_completed outcomes=%s", _summarize(outcomes))
        return outcomes

    async def _create_local_system(self, remote: PartnerSystem) -> SyncOutcome:
        async with self._session_factory() as session:
            try:
                await systems_repo.create_system(
                    session,
                    id=str(uuid4()),
                    system_id=remote.system_id,
                    panel_username=remote.username,
                    panel_password=remote.password,
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise DatabaseError("failed to create system from partner") from exc
        return SyncOutcome(EntityType.SYSTEM, remote.system_id, "created")

    async def _update_local_system(self, system_id: str, remote: PartnerSystem) -> SyncOutcome:
        async with self._session_factory() as session:
            try:
                system = await systems_repo.get_system(session, system_id)
                if system is None:
                    return SyncOutcome(EntityType.SYSTEM, remote.system_id, "skipped", "system removed")
                if system.panel_username == remote.username and system.panel_password == remote.password:
                    return SyncOutcome(EntityType.SYSTEM, remote.system_id, "unchanged")
                system.panel_username = remote.username
                system.panel_password = remote.password
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise DatabaseError("failed to update system from partner") from exc
        return SyncOutcome(EntityType.SYSTEM, remote.system_id, "updated")


def _summarize(outcomes: list[SyncOutcome]) -> dict[str, int]:
    summary: dict[str, int] = {}
    for outcome in outcomes:
        summary[outcome.outcome] = summary.get(outcome.outcome, 0) + 1
    return summary
