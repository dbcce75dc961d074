from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
import logging
from typing import Any, AsyncIterator, Callable
from uuid import uuid4

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from renewsync.core.config import Settings, get_settings
from renewsync.core.errors import (
    ActionNotFoundError,
    AutomationCancelledError,
    AutomationError,
    ConcurrencyConflictError,
    DatabaseError,
    IntegrationUnavailableError,
    NavigationTimeoutError,
    PartnerApiError,
    SystemNotFoundError,
    TransientNetworkError,
)
from renewsync.core.timeutil import as_utc, parse_panel_expiry, to_unix_seconds, utc_now
from renewsync.domain.models import POINT_SOURCE_BOTH, System
from renewsync.persistence.db import SessionLocal
from renewsync.persistence.repos import points as points_repo
from renewsync.persistence.repos import systems as systems_repo
from renewsync.providers.partner.base import PARTNER_STATUS_ACTIVE, PartnerApi
from renewsync.services.audit import add_extraction_audit
from renewsync.services.automation import (
    AutomationDriver,
    CancellationToken,
    DriverTrace,
    PanelCredentials,
    SystemDescriptor,
)
from renewsync.services.extraction import ExtractionResult
from renewsync.services.renewal.lease import acquire_run_lease, release_run_lease
from renewsync.services.resilience import Bulkhead, BulkheadLease
from renewsync.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


class QueueStatus(str, Enum):
    WAITING = "waiting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({QueueStatus.COMPLETED, QueueStatus.ERROR})
_STATUS_PRIORITY = {
    QueueStatus.PROCESSING: 0,
    QueueStatus.WAITING: 1,
    QueueStatus.ERROR: 2,
    QueueStatus.COMPLETED: 3,
}


class ForceOutcome(str, Enum):
    ENQUEUED = "enqueued"
    ALREADY_IN_FLIGHT = "already_in_flight"
    ALREADY_QUEUED = "already_queued"


class CancelOutcome(str, Enum):
    REMOVED = "removed"
    DEFERRED = "deferred"
    NOT_FOUND = "not_found"
    ALREADY_TERMINAL = "already_terminal"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class RenewalQueueItem:
    system_id: str
    external_id: str
    status: QueueStatus
    enqueued_at: datetime
    expiry_anchor: datetime | None = None
    forced: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    attempts: int = 0
    last_error: str | None = None
    error_code: str | None = None
    next_attempt_at: datetime | None = None
    cancel_requested: bool = False
    needs_attention: bool = False
    reason: str | None = None
    states: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "system_id": self.system_id,
            "external_id": self.external_id,
            "status": self.status.value,
            "enqueued_at": _iso(self.enqueued_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "attempts": self.attempts,
            "last_error": self.last_error,
            "error_code": self.error_code,
            "next_attempt_at": _iso(self.next_attempt_at),
            "expiry_anchor": _iso(self.expiry_anchor),
            "forced": self.forced,
            "cancel_requested": self.cancel_requested,
            "needs_attention": self.needs_attention,
            "reason": self.reason,
            "states": list(self.states),
        }


@dataclass(frozen=True)
class ForceResult:
    outcome: ForceOutcome
    item: RenewalQueueItem


def _is_retryable(exc: AutomationError) -> bool:
    return isinstance(exc, (TransientNetworkError, NavigationTimeoutError)) and not exc.generation_triggered


class RenewalQueueController:
    """Owns the renewal queue, the dispatch pool and the per-system locks.

    Every write to a system's rows happens while holding that system's lock,
    either inside a dispatched renewal or through ``system_guard``.
    """

    def __init__(
        self,
        *,
        driver: AutomationDriver | None = None,
        partner_client: PartnerApi | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._driver = driver or AutomationDriver(settings=self._settings)
        self._partner = partner_client
        self._session_factory = session_factory or SessionLocal
        self._clock = clock
        self._items: dict[str, RenewalQueueItem] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # External system id -> local id; locks and items are keyed by the local id only.
        self._local_ids: dict[str, str] = {}
        self._terminal_anchors: dict[str, datetime | None] = {}
        self._cancel_tokens: dict[str, CancellationToken] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._bulkhead = Bulkhead("renewal", self._settings.renewal_max_concurrency)
        self._last_scan_at: datetime | None = None
        self._running = False

    def _lock_for(self, system_id: str) -> asyncio.Lock:
        lock = self._locks.get(system_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[system_id] = lock
        return lock

    def _find_item(self, key: str) -> RenewalQueueItem | None:
        item = self._items.get(key)
        if item is not None:
            return item
        for candidate in self._items.values():
            if candidate.external_id == key:
                return candidate
        return None

    async def _resolve_system(self, session: AsyncSession, key: str) -> System:
        # Accept either the local id or the external system id.
        system = await systems_repo.get_system(session, key)
        if system is None:
            system = await systems_repo.get_system_by_external_id(session, key)
        if system is None:
            raise SystemNotFoundError(f"system not found: {key}")
        return system

    def _update_gauges(self) -> None:
        counts = self.counts()
        for status, count in counts.items():
            set_gauge(f"renewal_queue_depth.{status}", float(count))

    def _enqueue(self, system: System, anchor: datetime | None, *, forced: bool) -> RenewalQueueItem:
        now = self._clock()
        item = RenewalQueueItem(
            system_id=system.id,
            external_id=system.system_id,
            status=QueueStatus.WAITING,
            enqueued_at=now,
            expiry_anchor=anchor,
            forced=forced,
            next_attempt_at=now,
        )
        self._items[system.id] = item
        self._local_ids[system.system_id] = system.id
        increment_counter("renewals_enqueued_total")
        self._update_gauges()
        logger.info(
            "renewal_enqueued system_id=%s external_id=%s anchor=%s forced=%s",
            system.id,
            system.system_id,
            _iso(anchor),
            forced,
        )
        return item

    def _retire_terminal(self, now: datetime) -> None:
        retention = timedelta(minutes=self._settings.renewal_queue_retention_minutes)
        for system_id, item in list(self._items.items()):
            if item.status in TERMINAL_STATUSES and item.completed_at and now - item.completed_at >= retention:
                del self._items[system_id]

    async def scan_once(self) -> list[str]:
        """Enqueue systems whose nearest active point expires within the lead time."""
        now = self._clock()
        self._retire_terminal(now)
        self._last_scan_at = now
        lead = timedelta(minutes=self._settings.renewal_lead_time_minutes)
        cooldown = timedelta(minutes=self._settings.renewal_cooldown_minutes)
        async with self._session_factory() as session:
            candidates = await systems_repo.list_renewal_candidates(session)

        enqueued: list[str] = []
        for system, nearest in candidates:
            if nearest is None or nearest > now + lead:
                continue
            item = self._items.get(system.id)
            if item is not None and item.status not in TERMINAL_STATUSES:
                continue
            if system.id in self._terminal_anchors and self._terminal_anchors[system.id] == nearest:
                # Already handled this expiry; exhausted items wait for an operator.
                continue
            last_renewed = as_utc(system.last_renewed_at)
            if last_renewed is not None and now - last_renewed < cooldown:
                logger.debug("renewal_skipped_cooldown system_id=%s", system.id)
                continue
            self._enqueue(system, nearest, forced=False)
            enqueued.append(system.id)
        if enqueued:
            logger.info("renewal_scan_enqueued count=%s", len(enqueued))
        return enqueued

    async def dispatch_pending(self) -> list[asyncio.Task[None]]:
        """Start due waiting items while the pool has capacity."""
        now = self._clock()
        due = sorted(
            (
                item
                for item in self._items.values()
                if item.status == QueueStatus.WAITING
                and (item.next_attempt_at is None or item.next_attempt_at <= now)
            ),
            key=lambda item: (item.next_attempt_at or item.enqueued_at, item.enqueued_at, item.system_id),
        )
        started: list[asyncio.Task[None]] = []
        for item in due:
            lease = self._bulkhead.try_acquire()
            if lease is None:
                break
            lock = self._lock_for(item.system_id)
            # Re-check after acquiring the lease; no suspension happens between here and the claim.
            if item.status != QueueStatus.WAITING or self._items.get(item.system_id) is not item or lock.locked():
                lease.release()
                continue
            await lock.acquire()
            item.status = QueueStatus.PROCESSING
            item.started_at = self._clock()
            item.attempts += 1
            token = CancellationToken()
            self._cancel_tokens[item.system_id] = token
            task = asyncio.create_task(self._run_item(item, lock, lease, token))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(task)
        if started:
            self._update_gauges()
        return started

    async def _run_item(
        self,
        item: RenewalQueueItem,
        lock: asyncio.Lock,
        lease: BulkheadLease,
        token: CancellationToken,
    ) -> None:
        try:
            try:
                run_lease = await acquire_run_lease(item.system_id)
            except RedisError as exc:
                logger.warning("renewal_run_lease_unavailable system_id=%s", item.system_id, exc_info=exc)
                run_lease = None
            if run_lease is None:
                self._defer_contended(item)
                return
            increment_counter("renewals_started_total")
            logger.info("renewal_started system_id=%s attempt=%s", item.system_id, item.attempts)
            try:
                await self._process(item, token)
            finally:
                try:
                    await release_run_lease(run_lease)
                except RedisError as exc:
                    # The lease still expires after renewal_lease_ttl_s.
                    logger.warning("renewal_run_lease_release_failed system_id=%s", item.system_id, exc_info=exc)
        finally:
            self._cancel_tokens.pop(item.system_id, None)
            lock.release()
            lease.release()
            self._update_gauges()

    async def _process(self, item: RenewalQueueItem, token: CancellationToken) -> None:
        trace = DriverTrace(system_id=item.external_id)
        try:
            async with self._session_factory() as session:
                system = await self._resolve_system(session, item.system_id)
                descriptor = SystemDescriptor(id=system.id, system_id=system.system_id)
                credentials = PanelCredentials(
                    username=system.panel_username,
                    password=system.panel_password,
                )
            result = await self._driver.run(descriptor, credentials, cancel_token=token, trace=trace)
            item.states = [state.value for state in trace.states]
            await self._persist_success(item, result)
        except AutomationError as exc:
            item.states = [state.value for state in trace.states]
            self._handle_failure(item, exc)
        except SystemNotFoundError as exc:
            self._finish_error(item, reason=str(exc), code="SYSTEM_NOT_FOUND")
        except DatabaseError as exc:
            logger.error("renewal_persist_failed system_id=%s", item.system_id, exc_info=exc)
            self._finish_error(item, reason=str(exc), code="DATABASE_ERROR")
        except Exception as exc:  # noqa: BLE001 - a crashed run must still leave a terminal item
            logger.exception("renewal_unexpected_error system_id=%s", item.system_id)
            self._finish_error(item, reason=f"unexpected error: {type(exc).__name__}", code="INTERNAL_ERROR")

    def _defer_contended(self, item: RenewalQueueItem) -> None:
        if item.cancel_requested:
            self._finish_error(item, reason="cancelled by operator", code=AutomationCancelledError.code)
            return
        # Lease held elsewhere or Redis unreachable; the claim does not count as an attempt.
        item.status = QueueStatus.WAITING
        item.attempts = max(item.attempts - 1, 0)
        item.started_at = None
        item.next_attempt_at = self._clock() + timedelta(seconds=self._settings.renewal_backoff_base_s)
        increment_counter("renewal_lease_contended_total")
        logger.info("renewal_lease_held_elsewhere system_id=%s", item.system_id)

    def _handle_failure(self, item: RenewalQueueItem, exc: AutomationError) -> None:
        item.last_error = f"{exc.code}: {exc.message}"
        item.error_code = exc.code
        max_attempts = self._settings.renewal_max_attempts
        if isinstance(exc, AutomationCancelledError) or item.cancel_requested:
            self._finish_error(item, reason="cancelled by operator", code=exc.code)
            return
        if _is_retryable(exc) and item.attempts < max_attempts:
            delay_s = min(
                self._settings.renewal_backoff_base_s * (2 ** (item.attempts - 1)),
                self._settings.renewal_backoff_max_s,
            )
            item.status = QueueStatus.WAITING
            item.next_attempt_at = self._clock() + timedelta(seconds=delay_s)
            increment_counter("renewals_retried_total")
            logger.warning(
                "renewal_retry_scheduled system_id=%s attempt=%s code=%s delay_s=%s",
                item.system_id,
                item.attempts,
                exc.code,
                delay_s,
            )
            return
        if isinstance(exc, ActionNotFoundError):
            # Upstream workflow changed; retrying would not help.
            item.needs_attention = True
        reason = exc.message
        if _is_retryable(exc):
            reason = f"{exc.message} (gave up after {item.attempts} attempts)"
        self._finish_error(item, reason=reason, code=exc.code)

    def _finish_error(self, item: RenewalQueueItem, *, reason: str, code: str) -> None:
        item.status = QueueStatus.ERROR
        item.completed_at = self._clock()
        item.reason = reason
        item.error_code = code
        item.next_attempt_at = None
        self._terminal_anchors[item.system_id] = item.expiry_anchor
        increment_counter("renewals_failed_total")
        logger.warning(
            "renewal_failed system_id=%s code=%s attempts=%s needs_attention=%s reason=%s",
            item.system_id,
            code,
            item.attempts,
            item.needs_attention,
            reason,
        )

    async def _persist_success(self, item: RenewalQueueItem, result: ExtractionResult) -> None:
        now = self._clock()
        settings = self._settings
        expires_at = parse_panel_expiry(result.expires_at, tz_name=settings.panel_timezone)
        if expires_at is None:
            expires_at = now + timedelta(hours=settings.default_point_validity_hours)

        async with self._session_factory() as session:
            try:
                system = await self._resolve_system(session, item.system_id)
                point = await points_repo.get_nearest_expiring_point(session, system.id)
                previous_username = point.username if point is not None else None
                if point is None:
                    point = await points_repo.create_point(
                        session,
                        id=str(uuid4()),
                        system_id=system.id,
                        username=result.username,
                        password=result.password,
                        expires_at=expires_at,
                    )
                    point.renewed_at = now
                else:
                    points_repo.apply_renewal(
                        point,
                        username=result.username,
                        password=result.password,
                        expires_at=expires_at,
                        renewed_at=now,
                    )
                await session.flush()
                await systems_repo.record_renewal(session, system, renewed_at=now)
                add_extraction_audit(
                    session,
                    system_id=system.system_id,
                    source="panel",
                    username=result.username,
                    password=result.password,
                    expires_at=result.expires_at,
                    method=result.method.value,
                    raw_text_digest=result.raw_text_digest,
                    occurred_at=now,
                )
                await session.commit()
                point_id = point.id
            except SQLAlchemyError as exc:
                await session.rollback()
                raise DatabaseError("failed to persist renewal") from exc

        item.status = QueueStatus.COMPLETED
        item.completed_at = self._clock()
        item.next_attempt_at = None
        item.reason = "renewed"
        self._terminal_anchors[item.system_id] = item.expiry_anchor
        increment_counter("renewals_completed_total")
        logger.info(
            "renewal_completed system_id=%s method=%s attempts=%s",
            item.system_id,
            result.method.value,
            item.attempts,
        )

        if self._partner is not None and settings.partner_sync_on_renewal:
            try:
                await self._sync_partner(point_id, previous_username)
            except (PartnerApiError, IntegrationUnavailableError) as exc:
                # The renewal stands; reconciliation will surface the partner gap.
                item.last_error = f"partner sync failed: {exc}"
                logger.warning("renewal_partner_sync_failed system_id=%s", item.system_id, exc_info=exc)

    async def _sync_partner(self, point_id: str, previous_username: str | None) -> None:
        if self._partner is None:
            return
        async with self._session_factory() as session:
            point = await points_repo.get_point(session, point_id)
            if point is None:
                return
            system = await systems_repo.get_system(session, point.system_id)
            fields = {
                "username": point.username,
                "password": point.password,
                "status": PARTNER_STATUS_ACTIVE,
                "exp_date": to_unix_seconds(point.expires_at),
            }
            partner_user_id = point.partner_user_id
            if partner_user_id is None:
                usernames = {point.username, previous_username}
                for user in await self._partner.list_users():
                    if user.username in usernames:
                        partner_user_id = user.id
                        break
            if partner_user_id is not None:
                await self._partner.update_user(partner_user_id, fields)
            else:
                external = system.system_id if system is not None else ""
                created = await self._partner.create_user(
                    system=int(external) if external.isdigit() else None,
                    **fields,
                )
                partner_user_id = created.id
            point.partner_user_id = partner_user_id
            point.source = POINT_SOURCE_BOTH
            try:
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise DatabaseError("failed to record partner sync") from exc

    async def force_renew(self, system_key: str) -> ForceResult:
        """Enqueue a system regardless of the scan filters, never duplicating work."""
        async with self._session_factory() as session:
            system = await self._resolve_system(session, system_key)
            point = await points_repo.get_nearest_expiring_point(session, system.id)
            anchor = as_utc(point.expires_at) if point is not None else None
        item = self._items.get(system.id)
        if item is not None and item.status == QueueStatus.PROCESSING:
            return ForceResult(ForceOutcome.ALREADY_IN_FLIGHT, item)
        if item is not None and item.status == QueueStatus.WAITING:
            item.forced = True
            item.next_attempt_at = self._clock()
            return ForceResult(ForceOutcome.ALREADY_QUEUED, item)
        self._terminal_anchors.pop(system.id, None)
        return ForceResult(ForceOutcome.ENQUEUED, self._enqueue(system, anchor, forced=True))

    def cancel(self, system_key: str) -> CancelOutcome:
        item = self._find_item(system_key)
        if item is None:
            return CancelOutcome.NOT_FOUND
        if item.status == QueueStatus.WAITING:
            del self._items[item.system_id]
            self._update_gauges()
            logger.info("renewal_cancelled system_id=%s", item.system_id)
            return CancelOutcome.REMOVED
        if item.status == QueueStatus.PROCESSING:
            # The browser run is not interrupted; the flag is honored once it concludes.
            item.cancel_requested = True
            token = self._cancel_tokens.get(item.system_id)
            if token is not None:
                token.cancel()
            logger.info("renewal_cancel_requested system_id=%s", item.system_id)
            return CancelOutcome.DEFERRED
        return CancelOutcome.ALREADY_TERMINAL

    def get_item(self, system_key: str) -> RenewalQueueItem | None:
        return self._find_item(system_key)

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in QueueStatus}
        for item in self._items.values():
            counts[item.status.value] += 1
        return counts

    def set_running(self, running: bool) -> None:
        self._running = running

    def queue_status(self) -> dict[str, Any]:
        """Snapshot of the queue, active work first, plus scheduler timing."""
        items = sorted(
            self._items.values(),
            key=lambda item: (_STATUS_PRIORITY[item.status], item.enqueued_at, item.system_id),
        )
        next_check_at = None
        if self._running and self._last_scan_at is not None:
            next_check_at = self._last_scan_at + timedelta(seconds=self._settings.renewal_scan_interval_s)
        return {
            "is_running": self._running,
            "last_check_at": _iso(self._last_scan_at),
            "next_check_at": _iso(next_check_at),
            "items": [item.as_dict() for item in items],
            "counts": self.counts(),
            "total": len(items),
            "in_flight": self._bulkhead.in_use,
            "max_concurrency": self._bulkhead.limit,
        }

    async def scheduled_renewals(self) -> list[dict[str, Any]]:
        """Per system, the nearest expiry and how long until its renewal window opens."""
        now = self._clock()
        lead = timedelta(minutes=self._settings.renewal_lead_time_minutes)
        async with self._session_factory() as session:
            candidates = await systems_repo.list_renewal_candidates(session)
        scheduled: list[dict[str, Any]] = []
        for system, nearest in candidates:
            window_opens_at = nearest - lead
            item = self._items.get(system.id)
            scheduled.append(
                {
                    "system_id": system.id,
                    "external_id": system.system_id,
                    "nearest_expiry": _iso(nearest),
                    "window_opens_at": _iso(window_opens_at),
                    "seconds_until_window": max(0, int((window_opens_at - now).total_seconds())),
                    "due": window_opens_at <= now,
                    "last_renewed_at": _iso(as_utc(system.last_renewed_at)),
                    "queue_status": item.status.value if item is not None else None,
                }
            )
        return scheduled

    def _known_local_id(self, key: str) -> str | None:
        if key in self._items or key in self._locks:
            return key
        item = self._find_item(key)
        if item is not None:
            return item.system_id
        return self._local_ids.get(key)

    async def _local_id(self, key: str) -> str:
        local_id = self._known_local_id(key)
        if local_id is not None:
            return local_id
        async with self._session_factory() as session:
            system = await self._resolve_system(session, key)
        self._local_ids[system.system_id] = system.id
        return system.id

    def is_in_flight(self, system_key: str) -> bool:
        system_id = self._known_local_id(system_key) or system_key
        item = self._items.get(system_id)
        lock = self._locks.get(system_id)
        return (lock is not None and lock.locked()) or (
            item is not None and item.status == QueueStatus.PROCESSING
        )

    @asynccontextmanager
    async def system_guard(self, system_key: str) -> AsyncIterator[None]:
        """Exclusive, non-blocking access to a system's rows for writers outside the queue.

        ``system_key`` may be the local id or the external system id; both map to one lock.
        """
        system_id = await self._local_id(system_key)
        # No suspension between the check and the acquire below.
        if self.is_in_flight(system_id):
            raise ConcurrencyConflictError(f"system {system_key} has work in flight")
        lock = self._lock_for(system_id)
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()

    async def tick(self, *, scan: bool) -> None:
        if scan:
            await self.scan_once()
        await self.dispatch_pending()

    async def wait_idle(self) -> None:
        # Wait for dispatched runs; each run records its own outcome.
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    async def shutdown(self) -> None:
        # In-flight browser runs are never interrupted; let them conclude.
        await self.wait_idle()
