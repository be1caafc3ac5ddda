"""
Motor async (asyncpg) del indexador.

Cada job del scheduler y cada comando del CLI abre su propia sesión con
AsyncSessionLocal y hace commit por lotes; no hay sesión por request.
Los jobs no se solapan (max_instances=1), así que el pool es pequeño.
Las migraciones no pasan por aquí: Alembic usa DATABASE_SYNC_URL.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.APP_ENV == "development",
    pool_pre_ping=True,   # el scheduler vive días: reconexión tras cortes de Postgres
    pool_size=5,
    max_overflow=5,
)

# expire_on_commit=False: los servicios siguen leyendo filas tras cada commit de lote
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)
