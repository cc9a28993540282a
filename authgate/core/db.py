# authgate/core/db.py
import asyncio
import functools
import logging
from collections.abc import AsyncGenerator
from datetime import datetime, timezone

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from authgate.core.config import settings
from authgate.core.errors import StorageUnavailable

logger = logging.getLogger(__name__)

engine = create_async_engine(settings.async_database_url, echo=False, pool_pre_ping=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

class Base(DeclarativeBase):
    pass

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session

def utcnow() -> datetime:
    # guardamos UTC naive (DateTime(timezone=False), igual en MySQL y SQLite)
    return datetime.now(timezone.utc).replace(tzinfo=None)

async def run_guarded(awaitable, timeout: float | None = None):
    """
    Ejecuta trabajo de storage con timeout impuesto por el caller.
    Un timeout o un error de conexión nunca se convierte en éxito:
    se levanta StorageUnavailable (único error reintentable).
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout or settings.STORAGE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError as exc:
        logger.warning("storage timeout after %ss", timeout or settings.STORAGE_TIMEOUT_SECONDS)
        raise StorageUnavailable() from exc
    except (OperationalError, InterfaceError) as exc:
        logger.warning("storage error: %s", exc.__class__.__name__)
        raise StorageUnavailable() from exc

def storage_guard(fn):
    """Decorador para operaciones async: aplica run_guarded a toda la unidad de trabajo."""
    @functools.wraps(fn)
    async def _wrapped(*args, **kwargs):
        return await run_guarded(fn(*args, **kwargs))
    return _wrapped
