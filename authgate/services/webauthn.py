"""
WebAuthn: registro (attestation) y autenticación (assertion).

La parte criptográfica usa python-fido2 (parseo CBOR/COSE, authenticator data,
statements de attestation). Las comparaciones de challenge, origin y RP-ID
hash son exactas, byte a byte.
"""

import hmac
import logging
import secrets
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from fido2 import cbor
from fido2.attestation import Attestation
from fido2.cose import CoseKey
from fido2.utils import sha256, websafe_decode, websafe_encode
from fido2.webauthn import AttestationObject, AuthenticatorData, CollectedClientData
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core.config import settings
from authgate.core.db import utcnow
from authgate.core.errors import AttestationError, CounterReplay, SignatureInvalid
from authgate.models.mfa import MfaMethod, MfaMethodType, WebauthnCredential
from authgate.models.user import User

logger = logging.getLogger(__name__)

CHALLENGE_BYTES = 32
# ES256, EdDSA, RS256
SUPPORTED_ALGS = (-7, -8, -257)


@dataclass
class VerifiedRegistration:
    credential_id: str          # base64url
    public_key: str             # COSE key, CBOR, base64url
    sign_count: int
    transports: list[str] = field(default_factory=list)


def new_challenge() -> bytes:
    return secrets.token_bytes(CHALLENGE_BYTES)


# --- challenges guardados en session.data ---

def stash_challenge(data: Mapping[str, Any], purpose: str, challenge: bytes, ttl_seconds: int | None = None) -> dict:
    out = dict(data or {})
    out["webauthn"] = {
        "purpose": purpose,
        "challenge": websafe_encode(challenge),
        "expires_at": time.time() + (ttl_seconds or settings.WEBAUTHN_CHALLENGE_TTL_SECONDS),
    }
    return out

def pop_challenge(data: Mapping[str, Any], purpose: str) -> tuple[bytes | None, dict]:
    """Saca el challenge (de un solo uso). Devuelve (challenge | None, data sin challenge)."""
    out = dict(data or {})
    entry = out.pop("webauthn", None)
    if not entry or entry.get("purpose") != purpose:
        return None, out
    if float(entry.get("expires_at", 0)) < time.time():
        return None, out
    return websafe_decode(entry["challenge"]), out


# --- opciones para el cliente (navigator.credentials.*) ---

def registration_options(user: User, challenge: bytes, existing: list[WebauthnCredential]) -> dict:
    return {
        "rp": {"id": settings.WEBAUTHN_RP_ID, "name": settings.WEBAUTHN_RP_NAME},
        "user": {
            "id": websafe_encode(user.id.encode("utf-8")),
            "name": user.email,
            "displayName": user.email,
        },
        "challenge": websafe_encode(challenge),
        "pubKeyCredParams": [{"type": "public-key", "alg": alg} for alg in SUPPORTED_ALGS],
        "timeout": settings.WEBAUTHN_CHALLENGE_TTL_SECONDS * 1000,
        "attestation": "none",
        "excludeCredentials": [
            {"type": "public-key", "id": c.credential_id, "transports": c.transport_list} for c in existing
        ],
        "authenticatorSelection": {"userVerification": "preferred", "residentKey": "discouraged"},
    }

def authentication_options(challenge: bytes, credentials: list[WebauthnCredential]) -> dict:
    return {
        "challenge": websafe_encode(challenge),
        "rpId": settings.WEBAUTHN_RP_ID,
        "timeout": settings.WEBAUTHN_CHALLENGE_TTL_SECONDS * 1000,
        "allowCredentials": [
            {"type": "public-key", "id": c.credential_id, "transports": c.transport_list} for c in credentials
        ],
        "userVerification": "preferred",
    }


# --- verificación ---

def _response(credential: Any, error: type) -> Mapping[str, Any]:
    if not isinstance(credential, Mapping):
        raise error("Credencial mal formada")
    response = credential.get("response")
    if not isinstance(response, Mapping):
        raise error("Falta response")
    return response

def _b64(value: Any, what: str, error: type) -> bytes:
    if not isinstance(value, str) or not value:
        raise error(f"Falta {what}")
    try:
        return websafe_decode(value)
    except ValueError as exc:
        raise error(f"{what} mal codificado") from exc

def _client_data(raw: bytes, expected_type: str, expected_challenge: bytes, expected_origin: str, error: type):
    try:
        client = CollectedClientData(raw)
    except Exception as exc:
        raise error("clientDataJSON inválido") from exc
    if client.type != expected_type:
        raise error("Tipo de ceremonia inesperado")
    if not hmac.compare_digest(bytes(client.challenge), expected_challenge):
        raise error("Challenge no coincide")
    # origin exacto, sin matching parcial
    if client.origin != expected_origin:
        raise error("Origin no coincide")
    return client

def _check_rp(auth_data: AuthenticatorData, expected_rp_id: str, error: type) -> None:
    if not hmac.compare_digest(bytes(auth_data.rp_id_hash), sha256(expected_rp_id.encode("utf-8"))):
        raise error("RP ID no coincide")
    if not auth_data.is_user_present():
        raise error("Falta presencia del usuario")

def verify_registration(
    credential: Mapping[str, Any],
    *,
    expected_challenge: bytes,
    expected_origin: str | None = None,
    expected_rp_id: str | None = None,
) -> VerifiedRegistration:
    expected_origin = expected_origin or settings.WEBAUTHN_ORIGIN
    expected_rp_id = expected_rp_id or settings.WEBAUTHN_RP_ID
    response = _response(credential, AttestationError)

    raw_client = _b64(response.get("clientDataJSON"), "clientDataJSON", AttestationError)
    client = _client_data(raw_client, "webauthn.create", expected_challenge, expected_origin, AttestationError)

    raw_att = _b64(response.get("attestationObject"), "attestationObject", AttestationError)
    try:
        att_obj = AttestationObject(raw_att)
    except Exception as exc:   # CBOR truncado o campos faltantes
        raise AttestationError("attestationObject inválido") from exc
    auth_data = att_obj.auth_data
    _check_rp(auth_data, expected_rp_id, AttestationError)

    cred_data = auth_data.credential_data
    if cred_data is None:
        raise AttestationError("Sin datos de credencial")
    raw_id = _b64(credential.get("rawId") or credential.get("id"), "rawId", AttestationError)
    if not hmac.compare_digest(raw_id, bytes(cred_data.credential_id)):
        raise AttestationError("rawId no coincide con la credencial")

    public_key = cred_data.public_key
    if public_key.get(3) not in SUPPORTED_ALGS:
        raise AttestationError("Algoritmo no soportado")

    if att_obj.fmt not in settings.attestation_formats:
        raise AttestationError("Formato de attestation no aceptado")
    try:
        Attestation.for_type(att_obj.fmt)().verify(att_obj.att_stmt, auth_data, client.hash)
    except Exception as exc:   # InvalidData / InvalidSignature / UnsupportedType de fido2
        raise AttestationError("Attestation inválida") from exc

    return VerifiedRegistration(
        credential_id=websafe_encode(bytes(cred_data.credential_id)),
        public_key=websafe_encode(cbor.encode(dict(public_key))),
        sign_count=int(auth_data.counter),
        transports=[t for t in (response.get("transports") or []) if isinstance(t, str)],
    )

def check_sign_count(stored: int, reported: int) -> None:
    """
    El contador tiene que crecer estrictamente. Única excepción: ambos en 0
    (autenticadores que no implementan contador).
    """
    if stored == 0 and reported == 0:
        return
    if reported <= stored:
        raise CounterReplay()

def verify_authentication(
    credential: Mapping[str, Any],
    *,
    expected_challenge: bytes,
    public_key: str,
    stored_sign_count: int,
    expected_origin: str | None = None,
    expected_rp_id: str | None = None,
) -> int:
    """Verifica firma y contador; devuelve el sign_count nuevo."""
    expected_origin = expected_origin or settings.WEBAUTHN_ORIGIN
    expected_rp_id = expected_rp_id or settings.WEBAUTHN_RP_ID
    response = _response(credential, SignatureInvalid)

    raw_client = _b64(response.get("clientDataJSON"), "clientDataJSON", SignatureInvalid)
    client = _client_data(raw_client, "webauthn.get", expected_challenge, expected_origin, SignatureInvalid)

    raw_auth = _b64(response.get("authenticatorData"), "authenticatorData", SignatureInvalid)
    try:
        auth_data = AuthenticatorData(raw_auth)
    except Exception as exc:
        raise SignatureInvalid("authenticatorData inválido") from exc
    _check_rp(auth_data, expected_rp_id, SignatureInvalid)

    signature = _b64(response.get("signature"), "signature", SignatureInvalid)
    try:
        key = CoseKey.parse(cbor.decode(websafe_decode(public_key)))
        key.verify(raw_auth + client.hash, signature)
    except Exception as exc:   # InvalidSignature, clave COSE corrupta, CBOR truncado
        raise SignatureInvalid() from exc

    # firma válida: recién ahí se mira el contador
    check_sign_count(stored_sign_count, int(auth_data.counter))
    return int(auth_data.counter)


# --- persistencia ---

async def credentials_for_user(db: AsyncSession, user_id: str, enabled_only: bool = True) -> list[WebauthnCredential]:
    q = (
        select(WebauthnCredential)
        .join(MfaMethod, MfaMethod.id == WebauthnCredential.mfa_method_id)
        .where(MfaMethod.user_id == user_id, MfaMethod.type == MfaMethodType.webauthn)
    )
    if enabled_only:
        q = q.where(MfaMethod.enabled.is_(True))
    res = await db.execute(q.execution_options(populate_existing=True))
    return list(res.scalars().all())

async def store_credential(
    db: AsyncSession, user: User, verified: VerifiedRegistration, label: str | None = None
) -> MfaMethod:
    exists = await db.execute(
        select(WebauthnCredential.id).where(WebauthnCredential.credential_id == verified.credential_id)
    )
    if exists.scalar_one_or_none():
        raise AttestationError("La credencial ya está registrada")
    method = MfaMethod(user_id=user.id, type=MfaMethodType.webauthn, label=label or "Security key", enabled=True)
    method.webauthn_credential = WebauthnCredential(
        credential_id=verified.credential_id,
        public_key=verified.public_key,
        sign_count=verified.sign_count,
        transports=",".join(verified.transports) or None,
    )
    db.add(method)
    await db.flush()
    return method

async def update_sign_count(db: AsyncSession, credential: WebauthnCredential, expected: int, new: int) -> None:
    """Compare-and-set sobre sign_count: si otro request lo movió primero, CounterReplay."""
    res = await db.execute(
        update(WebauthnCredential)
        .where(WebauthnCredential.id == credential.id, WebauthnCredential.sign_count == expected)
        .values(sign_count=new, last_used_at=utcnow())
    )
    if res.rowcount != 1:
        raise CounterReplay()
