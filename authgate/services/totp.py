import hmac
import logging
import time
from collections.abc import Callable
from datetime import timedelta

import pyotp
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core.config import settings
from authgate.core.db import utcnow
from authgate.core.errors import InvalidCode, NotFound, RateLimited
from authgate.core.security import decrypt_secret, encrypt_secret
from authgate.models.mfa import MfaMethod, MfaMethodType, TotpSecret
from authgate.models.user import User

logger = logging.getLogger(__name__)

STEP_SECONDS = 30
DIGITS = 6


# --- motor (puro) ---

def generate_secret() -> str:
    # 32 chars base32 = 160 bits
    return pyotp.random_base32(length=32)

def provisioning_uri(secret: str, email: str, issuer: str | None = None) -> str:
    totp = pyotp.TOTP(secret, digits=DIGITS, interval=STEP_SECONDS)
    return totp.provisioning_uri(name=email, issuer_name=issuer or settings.TOTP_ISSUER)

def code_at(secret: str, for_time: float, step_offset: int = 0) -> str:
    return pyotp.TOTP(secret, digits=DIGITS, interval=STEP_SECONDS).at(for_time, counter_offset=step_offset)

def current_step(for_time: float) -> int:
    return int(for_time // STEP_SECONDS)

def verify_code(
    secret: str,
    code: str,
    for_time: float | None = None,
    *,
    last_used_step: int | None = None,
    window: int | None = None,
    budget: Callable[[], bool] | None = None,
) -> int:
    """
    Devuelve el time-step que coincidió (actual y ±window).

    Compara todos los steps de la ventana en tiempo constante, sin cortar
    en el primer match. Un step <= last_used_step se rechaza (replay).
    `budget` es el hook de intentos del caller: si devuelve False, RateLimited.
    """
    if budget is not None and not budget():
        raise RateLimited()
    now = time.time() if for_time is None else for_time
    window = settings.TOTP_VALID_WINDOW if window is None else window
    candidate = (code or "").strip().replace(" ", "")

    base = current_step(now)
    matched: int | None = None
    totp = pyotp.TOTP(secret, digits=DIGITS, interval=STEP_SECONDS)
    for offset in range(-window, window + 1):
        expected = totp.at(now, counter_offset=offset)
        if hmac.compare_digest(expected.encode(), candidate.encode()) and matched is None:
            matched = base + offset

    if matched is None:
        raise InvalidCode()
    if last_used_step is not None and matched <= last_used_step:
        raise InvalidCode()
    return matched


# --- persistencia ---

async def start_setup(db: AsyncSession, user: User, label: str | None = None) -> tuple[MfaMethod, str, str]:
    """Crea método (deshabilitado) + secreto provisorio. Devuelve (method, secret, uri)."""
    secret = generate_secret()
    method = MfaMethod(user_id=user.id, type=MfaMethodType.totp, label=label or "Authenticator", enabled=False)
    method.totp_secret = TotpSecret(secret=encrypt_secret(secret), confirmed=False)
    db.add(method)
    await db.flush()
    return method, secret, provisioning_uri(secret, user.email)

async def confirm_setup(
    db: AsyncSession, user: User, method_id: str, code: str, for_time: float | None = None
) -> MfaMethod:
    res = await db.execute(
        select(MfaMethod, TotpSecret)
        .join(TotpSecret, TotpSecret.mfa_method_id == MfaMethod.id)
        .where(
            MfaMethod.id == method_id,
            MfaMethod.user_id == user.id,
            MfaMethod.type == MfaMethodType.totp,
            TotpSecret.confirmed.is_(False),
        )
    )
    row = res.first()
    if not row:
        raise NotFound()
    method, secret_row = row
    if secret_row.created_at <= utcnow() - timedelta(seconds=settings.TOTP_UNCONFIRMED_TTL_SECONDS):
        # secreto provisorio vencido: hay que empezar de nuevo
        raise NotFound()

    step = verify_code(decrypt_secret(secret_row.secret), code, for_time)
    secret_row.confirmed = True
    secret_row.confirmed_at = utcnow()
    secret_row.last_used_step = step
    method.enabled = True
    await db.flush()
    return method

async def verify_for_user(
    db: AsyncSession,
    user_id: str,
    code: str,
    for_time: float | None = None,
    budget: Callable[[], bool] | None = None,
) -> MfaMethod:
    """
    Verifica el código contra los TOTP habilitados del usuario y marca el step
    como usado con compare-and-set. Si otro request ya usó ese step (o uno
    posterior) el UPDATE no afecta filas y es InvalidCode.
    """
    if budget is not None and not budget():
        raise RateLimited()
    res = await db.execute(
        select(MfaMethod, TotpSecret)
        .join(TotpSecret, TotpSecret.mfa_method_id == MfaMethod.id)
        .where(
            MfaMethod.user_id == user_id,
            MfaMethod.type == MfaMethodType.totp,
            MfaMethod.enabled.is_(True),
            TotpSecret.confirmed.is_(True),
        )
        .execution_options(populate_existing=True)
    )
    rows = res.all()
    for method, secret_row in rows:
        try:
            step = verify_code(
                decrypt_secret(secret_row.secret), code, for_time, last_used_step=secret_row.last_used_step
            )
        except InvalidCode:
            continue
        claimed = await db.execute(
            update(TotpSecret)
            .where(
                TotpSecret.id == secret_row.id,
                (TotpSecret.last_used_step.is_(None)) | (TotpSecret.last_used_step < step),
            )
            .values(last_used_step=step)
        )
        if claimed.rowcount == 1:
            return method
        logger.info("totp step already consumed for method %s", method.id)
    raise InvalidCode()

async def purge_unconfirmed(db: AsyncSession) -> int:
    """Borra métodos TOTP cuyo secreto nunca se confirmó dentro de la ventana."""
    cutoff = utcnow() - timedelta(seconds=settings.TOTP_UNCONFIRMED_TTL_SECONDS)
    stale = select(TotpSecret.mfa_method_id).where(
        TotpSecret.confirmed.is_(False), TotpSecret.created_at <= cutoff
    )
    ids = list((await db.execute(stale)).scalars().all())
    if not ids:
        return 0
    await db.execute(delete(TotpSecret).where(TotpSecret.mfa_method_id.in_(ids)))
    res = await db.execute(delete(MfaMethod).where(MfaMethod.id.in_(ids)))
    return res.rowcount or 0
