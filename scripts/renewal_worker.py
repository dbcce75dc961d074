from __future__ import annotations

import asyncio
import signal

from renewsync.core.logging import configure_logging
from renewsync.providers.partner.client import get_partner_client
from renewsync.services.reconciliation import ReconciliationService
from renewsync.services.renewal.controller import RenewalQueueController
from renewsync.services.renewal.worker import run_reconciliation_loop, run_renewal_scheduler_loop


async def _main() -> None:
    # Run the renewal scheduler and reconciliation loop without the HTTP surface.
    configure_logging()
    partner = get_partner_client()
    controller = RenewalQueueController(partner_client=partner)
    service = ReconciliationService(partner_client=partner, controller=controller)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    try:
        await asyncio.gather(
            run_renewal_scheduler_loop(controller, stop),
            run_reconciliation_loop(service, stop),
        )
    finally:
        if partner is not None:
            await partner.aclose()


if __name__ == "__main__":
    asyncio.run(_main())
