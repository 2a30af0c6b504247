"""
Database engine and session factory for the audio job store.
"""

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

from audiojobs_modules.config import logger, DATABASE_URL

from .models import Base

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30} if "sqlite" in DATABASE_URL else {},
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_database():
    """Создает таблицы для SQLite; для других бэкендов используются миграции Alembic."""
    backend = engine.url.get_backend_name()

    if backend != "sqlite":
        logger.info("Skipping SQLite bootstrap for backend %s; run alembic upgrade head", backend)
        return

    Base.metadata.create_all(engine)
    logger.info("SQLite job store initialized", extra={"url": str(engine.url)})


def check_connection() -> bool:
    with SessionLocal() as session:
        session.execute(text("SELECT 1"))
    return True
