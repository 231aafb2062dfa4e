import os
import logging
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import text
from config import settings
from tenacity import retry, stop_after_attempt, wait_fixed, retry_if_exception_type

logger = logging.getLogger(__name__)


def get_database_url():
    # Local mode keeps everything in a SQLite file next to the app
    mode = os.getenv("DATABASE_MODE", "cloud")  # 'cloud' or 'local'

    if mode == "local":
        return "sqlite+aiosqlite:///./gymdesk_local.sqlite"

    return settings.database_url_asyncpg


DATABASE_URL = get_database_url()
connect_args = {}
if DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_async_engine(
    DATABASE_URL,
    echo=settings.DEBUG,
    future=True,
    connect_args=connect_args
)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db():
    """Dependency for getting async database sessions"""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


@retry(
    retry=retry_if_exception_type((ConnectionRefusedError, OSError)),
    stop=stop_after_attempt(12),  # 60 seconds total (12 attempts * 5 seconds)
    wait=wait_fixed(5),
    reraise=True,
    before_sleep=lambda retry_state: logger.warning(
        f"Database connection attempt {retry_state.attempt_number} failed. "
        f"Retrying in 5 seconds... (Error: {retry_state.outcome.exception()})"
    )
)
async def init_db():
    """
    Initialize database tables with retry logic.

    Retries up to 12 times (60 seconds total) while the database is refusing
    connections, which happens when a managed Postgres proxy is still starting.
    """
    logger.info("Attempting to connect to database...")

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful!")

        # Import here to register every table on Base.metadata
        import models  # noqa: F401

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("Database initialization complete!")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise
