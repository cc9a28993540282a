"""
Tareas de mantenimiento: barrido de sesiones vencidas y de secretos TOTP sin
confirmar, y re-cifrado de secretos TOTP tras rotar TOTP_ENCRYPTION_KEYS.

El barrido corre periódicamente desde el lifespan de la app. La rotación se
corre a mano después de poner la clave nueva primera en la lista:

    authgate-maintenance rotate-keys
"""

import argparse
import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authgate.core.db import SessionLocal, engine
from authgate.core.logging import setup_logging
from authgate.core.security import rotate_secret
from authgate.models.mfa import TotpSecret
from authgate.services import totp
from authgate.services.sessions import SessionStore

logger = logging.getLogger(__name__)


async def sweep(db: AsyncSession) -> dict[str, int]:
    sessions = await SessionStore(db).purge_expired()
    unconfirmed = await totp.purge_unconfirmed(db)
    await db.commit()
    return {"sessions": sessions, "unconfirmed_totp": unconfirmed}


async def rotate_totp_keys(db: AsyncSession) -> int:
    """Re-cifra cada secreto TOTP con la clave primaria actual."""
    rows = (await db.execute(select(TotpSecret))).scalars().all()
    for row in rows:
        row.secret = rotate_secret(row.secret)
    await db.commit()
    logger.info("re-encrypted %s totp secrets", len(rows))
    return len(rows)


async def run_periodic(session_factory: async_sessionmaker, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        async with session_factory() as db:
            try:
                counts = await sweep(db)
            except SQLAlchemyError:
                # se reintenta en la próxima vuelta
                logger.exception("maintenance sweep failed")
                continue
        if any(counts.values()):
            logger.info("maintenance sweep: %s", counts)


async def _run(command: str) -> None:
    try:
        async with SessionLocal() as db:
            if command == "sweep":
                print(await sweep(db))
            else:
                print(f"{await rotate_totp_keys(db)} secretos re-cifrados")
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="authgate-maintenance", description="Mantenimiento de AuthGate")
    parser.add_argument("command", choices=["sweep", "rotate-keys"])
    args = parser.parse_args(argv)
    setup_logging()
    asyncio.run(_run(args.command))


if __name__ == "__main__":
    main()
