"""
Recovery codes: un lote vivo por usuario, cada código se usa una sola vez.

El texto plano sólo existe en el valor de retorno de `generate_batch`; en la
base queda un hash salado por código.
"""

import logging

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from authgate.core.config import settings
from authgate.core.db import utcnow
from authgate.core.errors import AlreadyUsed, InvalidCode
from authgate.core.security import generate_recovery_code, hash_recovery_code, verify_recovery_code
from authgate.models.recovery_code import RecoveryCode

logger = logging.getLogger(__name__)


async def generate_batch(db: AsyncSession, user_id: str, count: int | None = None) -> list[str]:
    count = count or settings.RECOVERY_CODE_COUNT
    # el lote anterior sin usar deja de valer; los usados quedan como historial
    await db.execute(
        delete(RecoveryCode).where(RecoveryCode.user_id == user_id, RecoveryCode.used.is_(False))
    )
    codes: set[str] = set()
    while len(codes) < count:
        codes.add(generate_recovery_code())
    plain = sorted(codes)
    now = utcnow()
    db.add_all(
        RecoveryCode(user_id=user_id, code_hash=hash_recovery_code(c), used=False, created_at=now)
        for c in plain
    )
    await db.flush()
    logger.info("recovery batch generated for user %s (%s codes)", user_id, count)
    return plain


async def consume(db: AsyncSession, user_id: str, code: str) -> RecoveryCode:
    """
    Busca el código en el lote vivo del usuario y lo marca usado con un UPDATE
    condicional (used = false). Si dos requests compiten por el mismo código
    sólo una ve rowcount == 1; la otra recibe AlreadyUsed.
    """
    # sólo el lote más reciente: el historial de lotes viejos no entra en la búsqueda
    batch = aliased(RecoveryCode)
    live_batch = (
        select(func.max(batch.created_at))
        .where(batch.user_id == user_id)
        .scalar_subquery()
    )
    res = await db.execute(
        select(RecoveryCode)
        .where(RecoveryCode.user_id == user_id, RecoveryCode.created_at == live_batch)
        .execution_options(populate_existing=True)
    )
    match: RecoveryCode | None = None
    for row in res.scalars():
        # se recorren todos para no filtrar por timing cuál coincidió
        if verify_recovery_code(code, row.code_hash) and match is None:
            match = row
    if match is None:
        raise InvalidCode()
    if match.used:
        raise AlreadyUsed()

    claimed = await db.execute(
        update(RecoveryCode)
        .where(RecoveryCode.id == match.id, RecoveryCode.used.is_(False))
        .values(used=True, used_at=utcnow())
    )
    if claimed.rowcount != 1:
        raise AlreadyUsed()
    return match


async def remaining(db: AsyncSession, user_id: str) -> int:
    res = await db.execute(
        select(func.count(RecoveryCode.id)).where(
            RecoveryCode.user_id == user_id, RecoveryCode.used.is_(False)
        )
    )
    return int(res.scalar_one())
