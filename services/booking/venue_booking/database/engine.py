from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from venue_booking.config import settings


def build_engine(database_url: str = settings.database_url, **kwargs):
    # Драйвер 'psycopg' должен быть установлен (pip install psycopg[binary])
    options = {"echo": False, "pool_size": 20, "max_overflow": 0, "pool_pre_ping": True}
    options.update(kwargs)
    return create_async_engine(database_url, **options)


def build_session_factory(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# 1. Асинхронный движок: соединение открывается лениво, при первом запросе
engine = build_engine()

# 2. Базовый класс для декларативных моделей SQLAlchemy
Base = declarative_base()

# 3. Асинхронный конструктор сессий
AsyncSessionLocal = build_session_factory(engine)

