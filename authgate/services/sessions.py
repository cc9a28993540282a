"""
Session store: sesiones opacas preauth | full guardadas en la tabla `sessions`.

El proceso no guarda estado de sesiones en memoria; todo pasa por la base.
Las transiciones sensibles (promoción, consumo de intentos) son escrituras
condicionales para que dos requests concurrentes no puedan ganar las dos.
"""

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from authgate.core.config import settings
from authgate.core.db import utcnow
from authgate.core.errors import SessionExpired, SessionTypeMismatch
from authgate.core.security import new_session_token
from authgate.models.session import AuthSession, SessionType

logger = logging.getLogger(__name__)


class SessionStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_preauth(self, user_id: str | None, ttl_seconds: int | None = None) -> AuthSession:
        # TTL fijo y corto, nunca se extiende
        return await self._create(user_id, SessionType.preauth, ttl_seconds or settings.PREAUTH_TTL_SECONDS)

    async def create_full(
        self,
        user_id: str,
        ttl_seconds: int | None = None,
        replaces: str | None = None,
    ) -> AuthSession:
        """
        Crea una sesión full con id NUEVO. Si viene `replaces` (la preauth del
        flujo) primero la borra con un DELETE condicional: si ya no estaba (otro
        request la reclamó, o hubo sign-out) falla con SessionExpired y no se
        emite ninguna sesión.
        """
        if replaces is not None:
            res = await self.db.execute(
                delete(AuthSession).where(
                    AuthSession.id == replaces,
                    AuthSession.type == SessionType.preauth,
                    AuthSession.expires_at > utcnow(),
                )
            )
            if res.rowcount != 1:
                raise SessionExpired()
        return await self._create(user_id, SessionType.full, ttl_seconds or settings.FULL_SESSION_TTL_SECONDS)

    async def _create(self, user_id: str | None, kind: SessionType, ttl_seconds: int) -> AuthSession:
        now = utcnow()
        record = AuthSession(
            id=new_session_token(),
            user_id=user_id,
            type=kind,
            data={},
            attempts=0,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        self.db.add(record)
        await self.db.flush()
        return record

    async def get(self, session_id: str) -> AuthSession:
        """
        Mismo error (SessionExpired) para id malformado, expirado o inexistente.
        Siempre se hace la consulta, no hay atajos por formato.
        """
        res = await self.db.execute(
            select(AuthSession).where(
                AuthSession.id == (session_id or ""),
                AuthSession.expires_at > utcnow(),
            ).execution_options(populate_existing=True)
        )
        record = res.scalar_one_or_none()
        if record is None:
            raise SessionExpired()
        return record

    async def get_typed(self, session_id: str, kind: SessionType) -> AuthSession:
        record = await self.get(session_id)
        if record.type != kind:
            raise SessionTypeMismatch()
        return record

    async def extend(self, record: AuthSession, ttl_seconds: int | None = None) -> AuthSession:
        """Expiración deslizante, sólo para sesiones full."""
        if record.type != SessionType.full:
            raise SessionTypeMismatch()
        new_expiry = utcnow() + timedelta(seconds=ttl_seconds or settings.FULL_SESSION_TTL_SECONDS)
        res = await self.db.execute(
            update(AuthSession)
            .where(AuthSession.id == record.id, AuthSession.expires_at > utcnow())
            .values(expires_at=new_expiry)
        )
        if res.rowcount != 1:
            raise SessionExpired()
        set_committed_value(record, "expires_at", new_expiry)
        return record

    async def update_data(self, record: AuthSession, data: dict[str, Any]) -> AuthSession:
        # UPDATE condicional: si la sesión ya no existe no se resucita
        res = await self.db.execute(
            update(AuthSession)
            .where(AuthSession.id == record.id, AuthSession.expires_at > utcnow())
            .values(data=data)
        )
        if res.rowcount != 1:
            raise SessionExpired()
        # ya está escrito; no marcar el objeto como dirty
        set_committed_value(record, "data", data)
        return record

    async def record_failed_attempt(self, session_id: str) -> int:
        """Incrementa atómicamente el contador de intentos y devuelve el valor nuevo."""
        res = await self.db.execute(
            update(AuthSession)
            .where(AuthSession.id == session_id)
            .values(attempts=AuthSession.attempts + 1)
        )
        if res.rowcount != 1:
            raise SessionExpired()
        current = await self.db.execute(select(AuthSession.attempts).where(AuthSession.id == session_id))
        return int(current.scalar_one())

    async def delete(self, session_id: str) -> None:
        # idempotente
        await self.db.execute(delete(AuthSession).where(AuthSession.id == session_id))

    async def delete_for_user(self, user_id: str, keep: str | None = None) -> int:
        q = delete(AuthSession).where(AuthSession.user_id == user_id)
        if keep is not None:
            q = q.where(AuthSession.id != keep)
        res = await self.db.execute(q)
        return res.rowcount or 0

    async def purge_expired(self) -> int:
        """Barrido de sesiones vencidas; `get` ya las trata como ausentes."""
        res = await self.db.execute(delete(AuthSession).where(AuthSession.expires_at <= utcnow()))
        count = res.rowcount or 0
        if count:
            logger.info("purged %s expired sessions", count)
        return count
