from __future__ import annotations

from datetime import timedelta

import pytest

from renewsync.core.errors import IntegrationUnavailableError, StaleSnapshotError
from renewsync.core.timeutil import to_unix_seconds
from renewsync.domain.models import POINT_SOURCE_BOTH, POINT_STATUS_INACTIVE
from renewsync.persistence.db import SessionLocal
from renewsync.persistence.repos.points import get_point
from renewsync.persistence.repos.systems import get_system_by_external_id
from renewsync.providers.panel.fake import FakePanelProvider
from renewsync.providers.partner.base import PARTNER_STATUS_INACTIVE, PartnerSystem, PartnerUser
from renewsync.providers.partner.fake import FakePartnerClient
from renewsync.services.automation import AutomationDriver
from renewsync.services.reconciliation import (
    ApiSnapshot,
    Classification,
    EntityType,
    LocalPointRecord,
    LocalSnapshot,
    LocalSystemRecord,
    ReconciliationService,
    reconcile,
)
from renewsync.services.renewal.controller import RenewalQueueController
from renewsync.tests.utils.factories import NOW, WallClock, make_settings, seed_point, seed_system


def _local_point(username: str, *, system: str = "500", expires_in: timedelta = timedelta(days=1)) -> LocalPointRecord:
    return LocalPointRecord(
        id=f"pt-{username}",
        system_local_id="sys-500",
        system_external_id=system,
        username=username,
        password="pw",
        expires_at=NOW + expires_in,
        status="active",
    )


def _api_user(user_id: int, username: str, *, expires_in: timedelta = timedelta(days=1)) -> PartnerUser:
    return PartnerUser(
        id=user_id,
        username=username,
        password="pw",
        status="Active",
        exp_date=to_unix_seconds(NOW + expires_in),
        system=500,
    )


def _snapshots(points, users, *, active_point_count: int = 1):
    local = LocalSnapshot(
        systems=(LocalSystemRecord("sys-500", "500", "panel", "secret", active_point_count),),
        points=tuple(points),
        taken_at=NOW,
    )
    api = ApiSnapshot(
        systems=(PartnerSystem(system_id="500", username="panel", password="secret"),),
        users=tuple(users),
        taken_at=NOW,
    )
    return local, api


def _service(partner: FakePartnerClient | None, clock: WallClock | None = None, **overrides):
    settings = make_settings(**overrides)
    controller = RenewalQueueController(
        driver=AutomationDriver(FakePanelProvider(), settings=settings),
        settings=settings,
        clock=clock or WallClock(),
    )
    service = ReconciliationService(
        partner_client=partner,
        controller=controller,
        settings=settings,
        clock=clock or WallClock(),
    )
    return service, controller


def test_local_only_point_and_divergent_system_count() -> None:
    # U1 exists only locally; the system reports 2 active points locally but 1 remotely.
    local, api = _snapshots(
        [_local_point("U1"), _local_point("U2")],
        [_api_user(1, "U2")],
        active_point_count=2,
    )

    entries = {(entry.entity_type, entry.key): entry for entry in reconcile(local, api, expiry_tolerance_s=60)}

    assert entries[(EntityType.POINT, "U1")].classification == Classification.LOCAL_ONLY
    assert entries[(EntityType.POINT, "U2")].classification == Classification.BOTH_IN_SYNC
    system_entry = entries[(EntityType.SYSTEM, "500")]
    assert system_entry.classification == Classification.BOTH_DIVERGENT
    assert system_entry.divergent_fields == ("active_point_count",)


def test_api_only_users_and_field_divergence() -> None:
    inactive = PartnerUser(id=2, username="U2", password="other", status=PARTNER_STATUS_INACTIVE, system=500)
    local, api = _snapshots([_local_point("U2")], [_api_user(1, "U9"), inactive], active_point_count=1)

    entries = {entry.key: entry for entry in reconcile(local, api, expiry_tolerance_s=60)}

    assert entries["U9"].classification == Classification.API_ONLY
    assert entries["U2"].classification == Classification.BOTH_DIVERGENT
    assert entries["U2"].divergent_fields == ("expires_at", "password", "status")


def test_expiry_within_tolerance_is_in_sync() -> None:
    local, api = _snapshots(
        [_local_point("near"), _local_point("far")],
        [
            _api_user(1, "near", expires_in=timedelta(days=1, seconds=30)),
            _api_user(2, "far", expires_in=timedelta(days=1, seconds=120)),
        ],
        active_point_count=2,
    )

    entries = {entry.key: entry for entry in reconcile(local, api, expiry_tolerance_s=60)}

    assert entries["near"].classification == Classification.BOTH_IN_SYNC
    assert entries["far"].divergent_fields == ("expires_at",)


def test_reconcile_is_deterministic_regardless_of_input_order() -> None:
    points = [_local_point(name) for name in ("b", "a", "c")]
    users = [_api_user(index, name) for index, name in enumerate(("c", "z", "a"), start=1)]
    first = reconcile(*_snapshots(points, users), expiry_tolerance_s=60)
    second = reconcile(*_snapshots(list(reversed(points)), list(reversed(users))), expiry_tolerance_s=60)

    assert first == second
    assert [entry.key for entry in first if entry.entity_type == EntityType.POINT] == ["a", "b", "c", "z"]


def test_stale_snapshot_is_rejected() -> None:
    clock = WallClock()
    service, _ = _service(FakePartnerClient(), clock, reconciliation_snapshot_ttl_s=120)
    local, api = _snapshots([], [])
    clock.now = NOW + timedelta(seconds=121)

    with pytest.raises(StaleSnapshotError):
        service.build_report(local, api)


@pytest.mark.asyncio
async def test_report_requires_partner_client() -> None:
    service, _ = _service(None)

    with pytest.raises(IntegrationUnavailableError):
        await service.report()


@pytest.mark.asyncio
async def test_report_is_cached_until_refresh() -> None:
    system = await seed_system(system_id="600")
    await seed_point(system, expires_at=NOW + timedelta(days=1), username="local-only")
    partner = FakePartnerClient(users=[_api_user(1, "remote-only")])
    service, _ = _service(partner)

    report = await service.report()
    counts = report.counts()

    assert counts["local_only"] >= 1
    assert counts["api_only"] == 1
    assert await service.report() is report
    assert await service.report(refresh=True) is not report


@pytest.mark.asyncio
async def test_push_creates_updates_and_skips_in_sync_users() -> None:
    system = await seed_system(system_id="700")
    created = await seed_point(system, expires_at=NOW + timedelta(days=1), username="new-user", password="pw")
    await seed_point(system, expires_at=NOW + timedelta(days=1), username="changed", password="fresh")
    await seed_point(system, expires_at=NOW + timedelta(days=1), username="same", password="pw")
    await seed_point(system, expires_at=NOW + timedelta(days=1), username="retired", status=POINT_STATUS_INACTIVE)
    partner = FakePartnerClient(
        users=[
            PartnerUser(id=10, username="changed", password="stale", exp_date=to_unix_seconds(NOW + timedelta(days=1))),
            PartnerUser(id=11, username="same", password="pw", exp_date=to_unix_seconds(NOW + timedelta(days=1))),
        ]
    )
    service, _ = _service(partner)

    outcomes = {outcome.key: outcome.outcome for outcome in await service.push_points()}

    assert outcomes == {"changed": "updated", "new-user": "created", "same": "unchanged"}
    assert partner.users[10].password == "fresh"
    new_user = next(user for user in partner.users.values() if user.username == "new-user")
    assert new_user.system == 700
    async with SessionLocal() as session:
        stored = await get_point(session, created.id)
    assert stored.partner_user_id == new_user.id
    assert stored.source == POINT_SOURCE_BOTH


@pytest.mark.asyncio
async def test_push_reports_conflict_for_guarded_systems() -> None:
    system = await seed_system()
    await seed_point(system, expires_at=NOW + timedelta(days=1), username="busy")
    partner = FakePartnerClient()
    service, controller = _service(partner)

    async with controller.system_guard(system.id):
        outcomes = await service.push_points()

    assert [(outcome.key, outcome.outcome) for outcome in outcomes] == [("busy", "conflict")]
    assert partner.users == {}


@pytest.mark.asyncio
async def test_push_can_delete_api_only_users() -> None:
    system = await seed_system()
    await seed_point(system, expires_at=NOW + timedelta(days=1), username="kept")
    partner = FakePartnerClient(users=[_api_user(3, "orphan")])
    service, _ = _service(partner)

    outcomes = await service.push_points(delete_api_only=True)

    assert ("orphan", "deleted") in [(outcome.key, outcome.outcome) for outcome in outcomes]
    assert 3 not in partner.users


@pytest.mark.asyncio
async def test_pull_upserts_local_systems() -> None:
    await seed_system(system_id="800", panel_username="old", panel_password="old")
    await seed_system(system_id="801", panel_username="same", panel_password="same")
    partner = FakePartnerClient(
        systems=[
            PartnerSystem(system_id="800", username="new", password="new"),
            PartnerSystem(system_id="801", username="same", password="same"),
            PartnerSystem(system_id="802", username="fresh", password="fresh"),
        ]
    )
    service, _ = _service(partner)

    outcomes = {outcome.key: outcome.outcome for outcome in await service.pull_systems()}

    assert outcomes == {"800": "updated", "801": "unchanged", "802": "created"}
    async with SessionLocal() as session:
        updated = await get_system_by_external_id(session, "800")
        created = await get_system_by_external_id(session, "802")
    assert (updated.panel_username, updated.panel_password) == ("new", "new")
    assert created is not None


@pytest.mark.asyncio
async def test_push_systems_publishes_panel_credentials() -> None:
    await seed_system(system_id="900", panel_username="rotated", panel_password="new-pass")
    await seed_system(system_id="901", panel_username="same", panel_password="same")
    missing = await seed_system(system_id="902", panel_username="fresh", panel_password="fresh")
    partner = FakePartnerClient(
        systems=[
            PartnerSystem(system_id="900", username="rotated", password="old-pass"),
            PartnerSystem(system_id="901", username="same", password="same"),
        ]
    )
    service, controller = _service(partner)

    async with controller.system_guard(missing.system_id):
        guarded = await service.push_systems(["902"])
    outcomes = {outcome.key: outcome.outcome for outcome in await service.push_systems()}

    assert [(outcome.key, outcome.outcome) for outcome in guarded] == [("902", "conflict")]
    assert outcomes == {"900": "updated", "901": "unchanged", "902": "created"}
    assert partner.systems["900"].password == "new-pass"
    assert partner.systems["902"].username == "fresh"
    assert ("update_system", "901") not in partner.calls
