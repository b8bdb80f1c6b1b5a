from __future__ import annotations

import asyncio

from services.common.logging_setup import get_logger
from services.render.delivery import DeliveryRegistry


log = get_logger("sweeper")


def sweep_cycle(*, registry: DeliveryRegistry) -> int:
    expired = registry.sweep()
    if expired:
        log.info("sweep_cycle done expired=%s outstanding=%s", expired, len(registry))
    else:
        log.debug("sweep_cycle done expired=0 outstanding=%s", len(registry))
    return expired


async def run_sweeper(registry: DeliveryRegistry, *, interval_sec: float) -> None:
    """Delete expired, never-downloaded outputs until cancelled."""
    while True:
        try:
            sweep_cycle(registry=registry)
        except Exception as e:
            log.exception("sweep cycle crashed err=%s", e)
        await asyncio.sleep(max(0.05, float(interval_sec)))
