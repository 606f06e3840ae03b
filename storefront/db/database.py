from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .base import Base
from ..core.config import Config


DATABASE_URL = Config.DATABASE_URL


def enable_sqlite_savepoints(engine: AsyncEngine) -> AsyncEngine:
    """
    Let SQLAlchemy own BEGIN on SQLite so SAVEPOINTs nest inside the session's
    transaction instead of committing it. No-op for other backends.
    """
    if engine.dialect.name != "sqlite":
        return engine

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


engine = enable_sqlite_savepoints(create_async_engine(DATABASE_URL, echo=Config.SQL_ECHO))
AsyncSessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    # register every table on the metadata before create_all
    from .. import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
