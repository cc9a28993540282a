from fastapi import APIRouter, Depends

from authgate.api.deps import get_auth_flow, get_current_user, get_full_session, get_token
from authgate.api.v1.auth import session_out
from authgate.models.session import AuthSession
from authgate.models.user import User
from authgate.schemas.auth import SessionOut
from authgate.schemas.mfa import (
    CodeIn, MfaMethodOut, RecoveryCodesOut, TotpConfirmIn, TotpSetupIn, TotpSetupOut,
    WebauthnAssertionIn, WebauthnOptionsOut, WebauthnRegisterCompleteIn,
)
from authgate.services.auth_flow import AuthFlow

router = APIRouter(prefix="/mfa", tags=["mfa"])


@router.get("/methods", response_model=list[MfaMethodOut])
async def list_methods(
    current_user: User = Depends(get_current_user),
    flow: AuthFlow = Depends(get_auth_flow),
):
    return await flow.list_methods(current_user)

# ---------- TOTP ----------
@router.post("/totp/setup", response_model=TotpSetupOut)
async def totp_setup(
    payload: TotpSetupIn | None = None,
    current_user: User = Depends(get_current_user),
    flow: AuthFlow = Depends(get_auth_flow),
):
    method_id, secret, uri = await flow.totp_setup_start(current_user, payload.label if payload else None)
    return TotpSetupOut(method_id=method_id, secret=secret, otpauth_url=uri)

@router.post("/totp/confirm", response_model=MfaMethodOut)
async def totp_confirm(
    payload: TotpConfirmIn,
    current_user: User = Depends(get_current_user),
    flow: AuthFlow = Depends(get_auth_flow),
):
    return await flow.totp_setup_confirm(current_user, payload.method_id, payload.code)

# el bearer de los challenges es el token preauth
@router.post("/totp/challenge", response_model=SessionOut)
async def totp_challenge(
    payload: CodeIn,
    preauth: str = Depends(get_token),
    flow: AuthFlow = Depends(get_auth_flow),
):
    return session_out(await flow.totp_challenge(preauth, payload.code))

# ---------- WebAuthn ----------
@router.post("/webauthn/register/begin", response_model=WebauthnOptionsOut)
async def webauthn_register_begin(
    session: AuthSession = Depends(get_full_session),
    current_user: User = Depends(get_current_user),
    flow: AuthFlow = Depends(get_auth_flow),
):
    return WebauthnOptionsOut(public_key=await flow.webauthn_register_begin(session, current_user))

@router.post("/webauthn/register/complete", response_model=MfaMethodOut)
async def webauthn_register_complete(
    payload: WebauthnRegisterCompleteIn,
    session: AuthSession = Depends(get_full_session),
    current_user: User = Depends(get_current_user),
    flow: AuthFlow = Depends(get_auth_flow),
):
    return await flow.webauthn_register_complete(session, current_user, payload.credential, payload.label)

@router.post("/webauthn/authenticate/begin", response_model=WebauthnOptionsOut)
async def webauthn_authenticate_begin(
    preauth: str = Depends(get_token),
    flow: AuthFlow = Depends(get_auth_flow),
):
    return WebauthnOptionsOut(public_key=await flow.webauthn_auth_begin(preauth))

@router.post("/webauthn/authenticate/complete", response_model=SessionOut)
async def webauthn_authenticate_complete(
    payload: WebauthnAssertionIn,
    preauth: str = Depends(get_token),
    flow: AuthFlow = Depends(get_auth_flow),
):
    return session_out(await flow.webauthn_auth_complete(preauth, payload.credential))

# ---------- Recovery codes ----------
@router.post("/recovery/generate", response_model=RecoveryCodesOut)
async def recovery_generate(
    current_user: User = Depends(get_current_user),
    flow: AuthFlow = Depends(get_auth_flow),
):
    # el texto plano se muestra una única vez
    return RecoveryCodesOut(codes=await flow.recovery_generate(current_user))

@router.post("/recovery/challenge", response_model=SessionOut)
async def recovery_challenge(
    payload: CodeIn,
    preauth: str = Depends(get_token),
    flow: AuthFlow = Depends(get_auth_flow),
):
    return session_out(await flow.recovery_challenge(preauth, payload.code))
