from __future__ import annotations

import asyncio
import logging
import time

from renewsync.core.config import get_settings
from renewsync.core.errors import IntegrationUnavailableError, PartnerApiError, StaleSnapshotError
from renewsync.services.reconciliation import ReconciliationService
from renewsync.services.renewal.controller import RenewalQueueController


logger = logging.getLogger(__name__)


async def run_renewal_scheduler_loop(
    controller: RenewalQueueController,
    stop: asyncio.Event | None = None,
) -> None:
    # One loop drives both scan and dispatch; scans run on their own slower cadence.
    settings = get_settings()
    tick_s = max(0.1, float(settings.renewal_tick_interval_s))
    scan_every_s = max(1, int(settings.renewal_scan_interval_s))
    stop = stop or asyncio.Event()
    if not settings.redis_url:
        logger.warning("renewal_scheduler_process_local redis_url=unset; run the loops in one process only")
    last_scan: float | None = None
    controller.set_running(True)
    try:
        while not stop.is_set():
            now = time.monotonic()
            scan_due = last_scan is None or now - last_scan >= scan_every_s
            try:
                await controller.tick(scan=scan_due)
                if scan_due:
                    last_scan = now
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("renewal scheduler cycle failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=tick_s)
            except asyncio.TimeoutError:
                continue
    finally:
        controller.set_running(False)
    await controller.shutdown()


async def run_reconciliation_cycle(service: ReconciliationService) -> dict[str, int] | None:
    try:
        report = await service.report(refresh=True)
    except (IntegrationUnavailableError, PartnerApiError, StaleSnapshotError) as exc:
        logger.warning("reconciliation_cycle_skipped reason=%s", exc)
        return None
    return report.counts()


async def run_reconciliation_loop(
    service: ReconciliationService,
    stop: asyncio.Event | None = None,
) -> None:
    # Runs independently of the renewal loop and never takes per-system locks.
    interval = max(5, int(get_settings().reconciliation_interval_s))
    stop = stop or asyncio.Event()
    while not stop.is_set():
        try:
            await run_reconciliation_cycle(service)
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("reconciliation cycle failed")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
