"""Conexión a la base de datos (PostgreSQL en producción, SQLite en local/tests)"""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
from sqlalchemy import event
from typing import AsyncGenerator, Optional
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

# Base para modelos SQLAlchemy
Base = declarative_base()

# Engine y session factory
engine = None
async_session_maker: Optional[async_sessionmaker] = None


def _normalize_url(database_url: str) -> str:
    """Convertir la URL al driver async correspondiente"""
    # Limpiar parámetros SSL de la URL (se configuran en connect_args)
    if database_url.startswith("postgresql") and "?" in database_url:
        database_url = database_url.split("?")[0]
        logger.info("Removed query parameters from DATABASE_URL (SSL configured in connect_args)")

    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif database_url.startswith("postgresql+psycopg://"):
        database_url = database_url.replace("postgresql+psycopg://", "postgresql+asyncpg://", 1)
    elif database_url.startswith("sqlite://"):
        database_url = database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def _install_sqlite_immediate_transactions(sync_engine):
    """
    SQLite: tomar el lock de escritura al inicio de cada transacción.

    pysqlite difiere el BEGIN hasta el primer DML; con BEGIN IMMEDIATE el
    UPDATE condicional de redención se serializa igual que un row lock de
    PostgreSQL y el busy timeout espera en vez de fallar por deadlock.
    """
    @event.listens_for(sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


async def init_db(database_url: Optional[str] = None):
    """Inicializar conexión a la base de datos"""
    global engine, async_session_maker

    if engine is not None:
        logger.warning("Database engine already initialized, skipping...")
        return

    database_url = _normalize_url(database_url or settings.DATABASE_URL)
    is_sqlite = database_url.startswith("sqlite")

    logger.info(f"Initializing database connection to: {database_url.split('@')[1] if '@' in database_url else database_url}")
    logger.info(f"Using async driver: {database_url.split(':')[0]}")

    if is_sqlite:
        # Una conexión por sesión; el busy timeout reemplaza al pool
        engine = create_async_engine(
            database_url,
            echo=settings.APP_DEBUG,
            poolclass=NullPool,
            connect_args={"timeout": 30},
        )
        _install_sqlite_immediate_transactions(engine.sync_engine)
    else:
        # Pool acotado: si se agota, pool_timeout corta y se reporta StorageUnavailable
        pool_config = {
            "pool_pre_ping": True,  # Verificar conexiones antes de usar
            "pool_recycle": 300,
            "pool_timeout": settings.DATABASE_POOL_TIMEOUT,
            "pool_use_lifo": True,
            "pool_size": settings.DATABASE_POOL_SIZE,
            "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        }
        logger.info(f"Pool config: size={pool_config['pool_size']}, overflow={pool_config['max_overflow']}, timeout={pool_config['pool_timeout']}s")
        engine = create_async_engine(
            database_url,
            echo=settings.APP_DEBUG,
            connect_args={"command_timeout": 10},
            **pool_config
        )

    async_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    logger.info("Database engine initialized successfully")


async def create_all():
    """Crear tablas (desarrollo local y tests; producción usa migraciones)"""
    # Registrar modelos en el metadata
    from shared.database import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_session_maker() -> async_sessionmaker:
    """Obtener la session factory para servicios que manejan sus propias transacciones"""
    if async_session_maker is None:
        logger.error("Database not initialized! Call init_db() first.")
        raise RuntimeError("Database not initialized. Please check application startup.")
    return async_session_maker


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency para obtener sesión de base de datos.

    Los reintentos por errores transitorios viven en los servicios que saben
    si la operación es idempotente (ver GateVerificationService).
    """
    session_maker = get_session_maker()
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def close_db():
    """Cerrar conexiones a la base de datos"""
    global engine, async_session_maker
    if engine:
        logger.info("Closing database connections...")
        await engine.dispose()
        engine = None
        async_session_maker = None
        logger.info("Database connections closed")
