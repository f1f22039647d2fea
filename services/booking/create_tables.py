import asyncio
import selectors
import sys

from sqlalchemy import text

from venue_booking.bookings import models  # noqa: F401  registers the tables on Base.metadata
from venue_booking.database.engine import Base, engine


async def main():
    print("Подключение к базе...")
    async with engine.begin() as conn:
        # The exclusion constraint compares venue_id with '=' inside a GiST index.
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist"))
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    print("Таблицы успешно созданы!")


if __name__ == "__main__":
    if sys.platform == 'win32':
        loop_factory = lambda: asyncio.SelectorEventLoop(selectors.SelectSelector())
        asyncio.run(main(), loop_factory=loop_factory)
    else:
        asyncio.run(main())
