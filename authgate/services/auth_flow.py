"""
MFA orchestrator.

Estados: Anonymous -> CredentialsVerified(preauth) -> Challenged(preauth) ->
Authenticated(full), o Rejected. Es el único que escribe transiciones de
sesión; TOTP, WebAuthn y recovery codes sólo verifican.

Cada operación pública es una unidad de trabajo: corre con timeout de
storage (`storage_guard`) y hace commit al final.
"""

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, NoReturn

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core.config import settings
from authgate.core.db import storage_guard, utcnow
from authgate.core.errors import (
    AccountDisabled, AlreadyUsed, AttemptsExhausted, AttestationError, AuthError, CounterReplay,
    EmailAlreadyRegistered, Forbidden, HashFormatError, InvalidCode, InvalidCredentials, NotFound,
    RateLimited, SessionExpired, SessionTypeMismatch, SignatureInvalid,
)
from authgate.core.events import HIGH, INFO, RequestContext, SecurityEventSink, StructlogEventSink
from authgate.core.ratelimit import AllowAllRateLimiter, RateLimiter
from authgate.core.security import dummy_password_hash, hash_password, verify_and_update, verify_password
from authgate.models.mfa import MfaMethod, MfaMethodType
from authgate.models.session import AuthSession, SessionType
from authgate.models.user import User
from authgate.services import recovery, totp, webauthn
from authgate.services.sessions import SessionStore

logger = logging.getLogger(__name__)


class ChallengeMethod(str, enum.Enum):
    totp = "totp"
    webauthn = "webauthn"
    recovery = "recovery"


@dataclass
class SignInResult:
    mfa_required: bool
    session: AuthSession | None = None          # full, si no hace falta MFA
    preauth_id: str | None = None
    preauth_expires_at: datetime | None = None
    methods: list[str] = field(default_factory=list)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthFlow:
    def __init__(
        self,
        db: AsyncSession,
        *,
        events: SecurityEventSink | None = None,
        rate_limiter: RateLimiter | None = None,
        context: RequestContext | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.sessions = SessionStore(db)
        self.events = events or StructlogEventSink()
        self.rate_limiter = rate_limiter or AllowAllRateLimiter()
        self.context = context or RequestContext()
        self.clock = clock

    # ---------- helpers ----------

    def _emit(self, event: str, *, user_id: str | None = None, method_type: str | None = None,
              severity: str = INFO, reason: str | None = None) -> None:
        self.events.emit(
            event,
            user_id=user_id,
            method_type=method_type,
            ip=self.context.ip,
            user_agent_class=self.context.user_agent_class,
            severity=severity,
            reason=reason,
        )

    async def _check_rate(self, key: str) -> None:
        if not await self.rate_limiter.check_and_consume(key):
            raise RateLimited()

    async def _user_by_email(self, email: str) -> User | None:
        res = await self.db.execute(select(User).where(User.email == email))
        return res.scalar_one_or_none()

    async def _authenticate_password(self, email: str, password: str) -> User:
        """
        Verifica email + password. Email inexistente y password incorrecta dan
        exactamente el mismo InvalidCredentials (y cuestan lo mismo: se verifica
        contra un hash dummy).
        """
        email = normalize_email(email)
        await self._check_rate(f"signin:{email}")
        user = await self._user_by_email(email)
        if user is None:
            verify_password(password, dummy_password_hash())
            self._emit("auth.signin.failed", reason="invalid_credentials")
            raise InvalidCredentials()
        try:
            ok, new_hash = verify_and_update(password, user.password_hash)
        except HashFormatError:
            logger.error("unreadable password hash for user %s", user.id)
            ok, new_hash = False, None
        if not ok:
            self._emit("auth.signin.failed", user_id=user.id, reason="invalid_credentials")
            raise InvalidCredentials()
        if not user.is_active:
            self._emit("auth.signin.failed", user_id=user.id, reason="account_disabled")
            raise AccountDisabled()
        if new_hash:
            # parámetros de hash viejos: se re-hashea con los actuales
            user.password_hash = new_hash
        return user

    async def _enabled_methods(self, user_id: str) -> list[MfaMethod]:
        res = await self.db.execute(
            select(MfaMethod).where(MfaMethod.user_id == user_id, MfaMethod.enabled.is_(True))
        )
        return list(res.scalars().all())

    async def _available_challenges(self, user_id: str, methods: list[MfaMethod]) -> list[str]:
        kinds = sorted({m.type.value for m in methods})
        if await recovery.remaining(self.db, user_id) > 0:
            kinds.append(ChallengeMethod.recovery.value)
        return kinds

    async def _require(self, token: str, kind: SessionType) -> AuthSession:
        record = await self.sessions.get(token)
        if record.type != kind:
            self._emit("session.type_mismatch", user_id=record.user_id, severity=HIGH,
                       reason=f"expected_{kind.value}")
            raise SessionTypeMismatch()
        return record

    async def _active_user(self, user_id: str | None) -> User:
        user = await self.db.get(User, user_id) if user_id else None
        if user is None:
            raise SessionExpired()
        if not user.is_active:
            raise AccountDisabled()
        return user

    async def _fail_challenge(
        self, preauth_id: str, user_id: str, method: ChallengeMethod, exc: AuthError
    ) -> NoReturn:
        """
        Cuenta el intento fallido. La preauth queda viva salvo que se agote el
        presupuesto, en cuyo caso se borra y el error es AttemptsExhausted.
        """
        attempts = await self.sessions.record_failed_attempt(preauth_id)
        if isinstance(exc, SignatureInvalid):
            # firmas inválidas repetidas: posible credencial clonada
            self._emit("mfa.webauthn.signature_invalid", user_id=user_id, method_type=method.value,
                       severity=HIGH if attempts >= 2 else INFO)
        if attempts >= settings.MFA_MAX_ATTEMPTS:
            await self.sessions.delete(preauth_id)
            await self.db.commit()
            self._emit("mfa.challenge.exhausted", user_id=user_id, method_type=method.value, severity=HIGH)
            raise AttemptsExhausted() from exc
        await self.db.commit()
        self._emit("mfa.challenge.failed", user_id=user_id, method_type=method.value, reason=exc.code)
        raise exc

    # ---------- sign up / sign in ----------

    @storage_guard
    async def sign_up(self, email: str, password: str) -> User:
        email = normalize_email(email)
        if await self._user_by_email(email):
            raise EmailAlreadyRegistered()
        user = User(email=email, password_hash=hash_password(password))
        self.db.add(user)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise EmailAlreadyRegistered() from exc
        await self.db.refresh(user)
        self._emit("auth.signup", user_id=user.id)
        return user

    @storage_guard
    async def sign_in(self, email: str, password: str) -> SignInResult:
        user = await self._authenticate_password(email, password)
        user_id = user.id
        methods = await self._enabled_methods(user_id)
        if not methods:
            full = await self.sessions.create_full(user_id)
            await self.db.commit()
            self._emit("auth.signin.succeeded", user_id=user_id)
            return SignInResult(mfa_required=False, session=full)

        kinds = await self._available_challenges(user_id, methods)
        preauth = await self.sessions.create_preauth(user_id)
        await self.db.commit()
        self._emit("auth.signin.mfa_required", user_id=user_id)
        return SignInResult(
            mfa_required=True,
            preauth_id=preauth.id,
            preauth_expires_at=preauth.expires_at,
            methods=kinds,
        )

    @storage_guard
    async def require_session(self, token: str, kind: SessionType = SessionType.full) -> AuthSession:
        """Carga la sesión exigiendo el tipo. preauth nunca pasa donde se pide full (ni al revés)."""
        record = await self._require(token, kind)
        if kind == SessionType.full and settings.SESSION_SLIDING:
            half = timedelta(seconds=settings.FULL_SESSION_TTL_SECONDS / 2)
            if record.expires_at - utcnow() < half:
                await self.sessions.extend(record)
                await self.db.commit()
        return record

    @storage_guard
    async def current_user(self, record: AuthSession) -> User:
        return await self._active_user(record.user_id)

    @storage_guard
    async def sign_out(self, token: str) -> None:
        # idempotente: un token inexistente no es error
        await self.sessions.delete(token)
        await self.db.commit()
        self._emit("auth.signout")

    # ---------- challenges (preauth -> full) ----------

    @storage_guard
    async def challenge(self, preauth_id: str, method: ChallengeMethod, proof: Any) -> AuthSession:
        method = ChallengeMethod(method)
        preauth = await self._require(preauth_id, SessionType.preauth)
        preauth_id = preauth.id
        user_id = preauth.user_id
        if user_id is None:
            raise SessionExpired()
        await self._check_rate(f"challenge:{user_id}")
        user = await self._active_user(user_id)

        try:
            if method == ChallengeMethod.totp:
                await totp.verify_for_user(self.db, user_id, str(proof or ""), self.clock())
            elif method == ChallengeMethod.webauthn:
                await self._verify_webauthn_assertion(preauth, user_id, proof)
            else:
                await recovery.consume(self.db, user_id, str(proof or ""))
                user.mfa_recheck_required = True
        except CounterReplay:
            # contador que no avanza = posible clon: falla dura, se corta el login
            await self.sessions.delete(preauth_id)
            await self.db.commit()
            self._emit("mfa.webauthn.counter_replay", user_id=user_id,
                       method_type=MfaMethodType.webauthn.value, severity=HIGH)
            raise
        except (InvalidCode, AlreadyUsed, SignatureInvalid) as exc:
            await self._fail_challenge(preauth_id, user_id, method, exc)

        # claim de la preauth + sesión nueva en la misma transacción
        full = await self.sessions.create_full(user_id, replaces=preauth_id)
        await self.db.commit()
        self._emit("mfa.challenge.succeeded", user_id=user_id, method_type=method.value)
        if method == ChallengeMethod.recovery:
            self._emit("mfa.recovery.consumed", user_id=user_id, method_type=method.value)
        return full

    async def totp_challenge(self, preauth_id: str, code: str) -> AuthSession:
        return await self.challenge(preauth_id, ChallengeMethod.totp, code)

    async def webauthn_auth_complete(self, preauth_id: str, credential: dict) -> AuthSession:
        return await self.challenge(preauth_id, ChallengeMethod.webauthn, credential)

    async def recovery_challenge(self, preauth_id: str, code: str) -> AuthSession:
        return await self.challenge(preauth_id, ChallengeMethod.recovery, code)

    async def _verify_webauthn_assertion(self, preauth: AuthSession, user_id: str, credential: Any) -> None:
        # el challenge es de un solo uso: se consume antes de verificar
        expected, data = webauthn.pop_challenge(preauth.data, "authenticate")
        await self.sessions.update_data(preauth, data)
        if expected is None:
            raise SignatureInvalid("challenge ausente o vencido")
        if not isinstance(credential, dict):
            raise SignatureInvalid("assertion mal formada")

        raw_id = credential.get("rawId") or credential.get("id")
        stored = next(
            (c for c in await webauthn.credentials_for_user(self.db, user_id) if c.credential_id == raw_id),
            None,
        )
        if stored is None:
            raise SignatureInvalid("credencial desconocida")
        previous = stored.sign_count
        new_count = webauthn.verify_authentication(
            credential,
            expected_challenge=expected,
            public_key=stored.public_key,
            stored_sign_count=previous,
        )
        await webauthn.update_sign_count(self.db, stored, previous, new_count)

    @storage_guard
    async def webauthn_auth_begin(self, preauth_id: str) -> dict:
        preauth = await self._require(preauth_id, SessionType.preauth)
        if preauth.user_id is None:
            raise SessionExpired()
        creds = await webauthn.credentials_for_user(self.db, preauth.user_id)
        challenge = webauthn.new_challenge()
        await self.sessions.update_data(preauth, webauthn.stash_challenge(preauth.data, "authenticate", challenge))
        await self.db.commit()
        return webauthn.authentication_options(challenge, creds)

    @storage_guard
    async def recovery_consume(self, email: str, password: str, code: str) -> AuthSession:
        """
        Entrada con recovery code sin preauth: se vuelve a pedir la password
        (un código robado solo no alcanza). Deja la cuenta marcada para
        re-chequeo de dispositivos.
        """
        user = await self._authenticate_password(email, password)
        user_id = user.id
        await self._check_rate(f"recovery:{user_id}")
        try:
            await recovery.consume(self.db, user_id, code)
        except (InvalidCode, AlreadyUsed) as exc:
            self._emit("mfa.challenge.failed", user_id=user_id,
                       method_type=ChallengeMethod.recovery.value, reason=exc.code)
            raise
        user.mfa_recheck_required = True
        full = await self.sessions.create_full(user_id)
        await self.db.commit()
        self._emit("mfa.recovery.consumed", user_id=user_id, method_type=ChallengeMethod.recovery.value)
        return full

    # ---------- enrolamiento (sesión full) ----------

    @storage_guard
    async def totp_setup_start(self, user: User, label: str | None = None) -> tuple[str, str, str]:
        method, secret, uri = await totp.start_setup(self.db, user, label)
        method_id = method.id
        await self.db.commit()
        return method_id, secret, uri

    @storage_guard
    async def totp_setup_confirm(self, user: User, method_id: str, code: str) -> MfaMethod:
        method = await totp.confirm_setup(self.db, user, method_id, code, self.clock())
        user.mfa_recheck_required = False
        await self.db.commit()
        self._emit("mfa.totp.enrolled", user_id=user.id, method_type=MfaMethodType.totp.value)
        return method

    @storage_guard
    async def webauthn_register_begin(self, record: AuthSession, user: User) -> dict:
        existing = await webauthn.credentials_for_user(self.db, user.id, enabled_only=False)
        challenge = webauthn.new_challenge()
        await self.sessions.update_data(record, webauthn.stash_challenge(record.data, "register", challenge))
        await self.db.commit()
        return webauthn.registration_options(user, challenge, existing)

    @storage_guard
    async def webauthn_register_complete(
        self, record: AuthSession, user: User, credential: dict, label: str | None = None
    ) -> MfaMethod:
        expected, data = webauthn.pop_challenge(record.data, "register")
        await self.sessions.update_data(record, data)
        try:
            if expected is None:
                raise AttestationError("challenge ausente o vencido")
            verified = webauthn.verify_registration(credential, expected_challenge=expected)
            method = await webauthn.store_credential(self.db, user, verified, label)
        except AttestationError as exc:
            # el challenge queda consumido igual
            await self.db.commit()
            self._emit("mfa.webauthn.enroll_failed", user_id=user.id,
                       method_type=MfaMethodType.webauthn.value, reason=exc.code)
            raise
        user.mfa_recheck_required = False
        await self.db.commit()
        self._emit("mfa.webauthn.enrolled", user_id=user.id, method_type=MfaMethodType.webauthn.value)
        return method

    @storage_guard
    async def recovery_generate(self, user: User) -> list[str]:
        codes = await recovery.generate_batch(self.db, user.id)
        await self.db.commit()
        self._emit("mfa.recovery.generated", user_id=user.id, method_type=ChallengeMethod.recovery.value)
        return codes

    @storage_guard
    async def list_methods(self, user: User) -> list[MfaMethod]:
        res = await self.db.execute(
            select(MfaMethod).where(MfaMethod.user_id == user.id).order_by(MfaMethod.created_at)
        )
        return list(res.scalars().all())

    @storage_guard
    async def change_password(self, record: AuthSession, user: User, current: str, new: str) -> None:
        try:
            ok = verify_password(current, user.password_hash)
        except HashFormatError:
            ok = False
        if not ok:
            self._emit("auth.password.change_failed", user_id=user.id, reason="invalid_credentials")
            raise InvalidCredentials()
        user.password_hash = hash_password(new)
        # las demás sesiones del usuario dejan de valer
        await self.sessions.delete_for_user(user.id, keep=record.id)
        await self.db.commit()
        self._emit("auth.password.changed", user_id=user.id)

    # ---------- admin ----------

    @storage_guard
    async def admin_revoke_method(self, admin: User, method_id: str) -> MfaMethod:
        if not admin.is_admin:
            self._emit("admin.forbidden", user_id=admin.id, severity=HIGH)
            raise Forbidden()
        method = await self.db.get(MfaMethod, method_id)
        if method is None:
            raise NotFound()
        # deshabilitar, nunca borrar (auditoría)
        method.enabled = False
        await self.db.commit()
        self._emit("mfa.method.revoked", user_id=method.user_id, method_type=method.type.value)
        return method
