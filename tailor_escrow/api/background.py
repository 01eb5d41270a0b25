import asyncio
import logging
from typing import Callable

from tailor_escrow.api.routers.escrow_runtime import EscrowServices

logger = logging.getLogger(__name__)


async def run_periodic_sweeps(
    *,
    services_provider: Callable[[], EscrowServices],
    interval_seconds: int,
    stop_event: asyncio.Event,
) -> None:
    """Run the auto-approval and SLA warning sweeps until ``stop_event`` is set.

    Sweeps are synchronous and storage-bound, so each runs in a worker thread. A failing
    sweep is logged and retried on the next tick.
    """
    logger.info(
        "Periodic sweeps started.", extra={"extra_fields": {"interval_seconds": interval_seconds}}
    )
    while not stop_event.is_set():
        services = services_provider()
        try:
            await asyncio.to_thread(services.scheduler.run_sweep)
            await asyncio.to_thread(services.disputes.sla_warning_sweep)
        except Exception:
            logger.exception("Periodic sweep failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue
    logger.info("Periodic sweeps stopped.")
