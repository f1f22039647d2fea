import asyncio
import json

import aio_pika
import structlog
from sqlalchemy import select

from venue_booking.bookings.models import OutboxEvent
from venue_booking.config import settings
from venue_booking.database.engine import AsyncSessionLocal

logger = structlog.get_logger(__name__)

QUEUE_NAME = "booking_notifications"


def encode_event(event: OutboxEvent) -> bytes:
    return json.dumps({"event_type": event.event_type, "payload": event.payload}).encode()


async def publish_batch(session, channel, batch_size: int = 10) -> int:
    """Publish one batch of pending outbox events; returns how many were sent."""
    query = (
        select(OutboxEvent)
        .where(OutboxEvent.status == "PENDING")
        .order_by(OutboxEvent.id)
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    )
    events = (await session.execute(query)).scalars().all()
    for event in events:
        await channel.default_exchange.publish(
            aio_pika.Message(body=encode_event(event), delivery_mode=aio_pika.DeliveryMode.PERSISTENT),
            routing_key=QUEUE_NAME,
        )
        event.status = "PROCESSED"
    await session.commit()
    return len(events)


async def publish_outbox_events(rabbitmq_url: str = settings.rabbitmq_url, session_factory=AsyncSessionLocal) -> None:
    """Фоновый воркер для отправки событий из Outbox в RabbitMQ."""
    while True:
        try:
            connection = await aio_pika.connect_robust(rabbitmq_url)
            async with connection:
                channel = await connection.channel()
                await channel.declare_queue(QUEUE_NAME, durable=True)
                while True:
                    async with session_factory() as session:
                        sent = await publish_batch(session, channel)
                    if sent:
                        logger.info("outbox_published", events=sent)
                    else:
                        await asyncio.sleep(5)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("outbox_publish_failed")
            await asyncio.sleep(10)
