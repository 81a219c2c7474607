"""SQLAlchemy engine and session factory for the sync tables"""
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.config.settings import get_settings

settings = get_settings()

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    # SQLite is only used for local runs and tests; it has no server-side pool
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_pre_ping": True,
    }


engine = create_engine(settings.DATABASE_URL, echo=False, **_engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Request-scoped session; Celery tasks open their own via SessionLocal"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create the tables directly, for local development without Alembic"""
    from app.models import Base

    Base.metadata.create_all(bind=engine)
    logger.info(f"Created tables: {', '.join(sorted(Base.metadata.tables))}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    create_tables()
