import asyncio

import structlog

from venue_booking.bookings.dependencies import BookingServices

logger = structlog.get_logger(__name__)


async def run_sweep(services: BookingServices) -> tuple[int, int]:
    now = services.clock()
    expired_holds = await services.holds.sweep(now)
    expired_bookings = await services.state_machine.expire_stale(now)
    return expired_holds, expired_bookings


async def expire_holds_worker(services: BookingServices, poll_interval_seconds: int = 30) -> None:
    """Periodically expire stale holds and unpaid bookings so their time is released."""
    while True:
        try:
            expired_holds, expired_bookings = await run_sweep(services)
            if expired_holds or expired_bookings:
                logger.info("expiry_sweep", expired_holds=expired_holds, expired_bookings=expired_bookings)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("expiry_sweep_failed")
            await asyncio.sleep(10)
            continue

        await asyncio.sleep(poll_interval_seconds)
