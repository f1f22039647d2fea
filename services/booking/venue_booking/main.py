import asyncio

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from venue_booking.bookings.cleanup_worker import expire_holds_worker
from venue_booking.bookings.dependencies import build_services, build_store
from venue_booking.bookings.router import router as booking_router
from venue_booking.config import settings
from venue_booking.exceptions import BookingServiceError
from venue_booking.logger import configure_logging

logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Venue Booking Service",
    description="Availability checks, temporary holds and their promotion into bookings.",
    version="1.0.0",
)


@app.exception_handler(BookingServiceError)
async def booking_error_handler(request: Request, exc: BookingServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.get("/health")
def health_check():
    return {"status": "ok", "service": "venue-booking"}


@app.on_event("startup")
async def startup_event():
    configure_logging(settings.log_level, settings.log_json)
    store = build_store(settings)
    app.state.services = build_services(store, settings)
    app.state.background_tasks = []

    if settings.background_workers:
        # Запускаем фоновые задачи при старте приложения
        app.state.background_tasks.append(
            asyncio.create_task(expire_holds_worker(app.state.services, settings.sweep_interval_seconds))
        )
        if settings.store_backend == "postgres":
            from venue_booking.bookings.publisher import publish_outbox_events

            app.state.background_tasks.append(asyncio.create_task(publish_outbox_events(settings.rabbitmq_url)))

    logger.info("service_started", store_backend=settings.store_backend, hold_ttl_minutes=settings.hold_ttl_minutes)


@app.on_event("shutdown")
async def shutdown_event():
    for task in app.state.background_tasks:
        task.cancel()
    await asyncio.gather(*app.state.background_tasks, return_exceptions=True)
    await app.state.services.store.close()


app.include_router(booking_router, prefix="/api/v1")
