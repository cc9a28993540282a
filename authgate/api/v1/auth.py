from fastapi import APIRouter, Depends

from authgate.api.deps import get_auth_flow, get_current_user, get_full_session, get_token
from authgate.models.session import AuthSession
from authgate.models.user import User
from authgate.schemas.auth import (
    PasswordChangeIn, RecoverySignInIn, SessionOut, SignInIn, SignInOut, SignUpIn, UserOut,
)
from authgate.services.auth_flow import AuthFlow

router = APIRouter(prefix="/auth", tags=["auth"])


def session_out(record: AuthSession) -> SessionOut:
    return SessionOut(session_token=record.id, expires_at=record.expires_at)


@router.post("/signup", response_model=UserOut, status_code=201)
async def signup(payload: SignUpIn, flow: AuthFlow = Depends(get_auth_flow)):
    return await flow.sign_up(payload.email, payload.password)

@router.post("/signin", response_model=SignInOut)
async def signin(payload: SignInIn, flow: AuthFlow = Depends(get_auth_flow)):
    result = await flow.sign_in(payload.email, payload.password)
    if not result.mfa_required:
        return SignInOut(
            mfa_required=False,
            session_token=result.session.id,
            expires_at=result.session.expires_at,
        )
    return SignInOut(
        mfa_required=True,
        preauth_token=result.preauth_id,
        expires_at=result.preauth_expires_at,
        methods=result.methods,
    )

# entrada con recovery code cuando no hay ningún factor a mano
@router.post("/recovery", response_model=SessionOut)
async def recovery_signin(payload: RecoverySignInIn, flow: AuthFlow = Depends(get_auth_flow)):
    record = await flow.recovery_consume(payload.email, payload.password, payload.code)
    return session_out(record)

@router.post("/signout", status_code=204)
async def signout(token: str = Depends(get_token), flow: AuthFlow = Depends(get_auth_flow)):
    await flow.sign_out(token)

@router.post("/password", status_code=204)
async def change_password(
    payload: PasswordChangeIn,
    session: AuthSession = Depends(get_full_session),
    current_user: User = Depends(get_current_user),
    flow: AuthFlow = Depends(get_auth_flow),
):
    await flow.change_password(session, current_user, payload.current_password, payload.new_password)

@router.get("/me", response_model=UserOut)
async def me(current_user: User = Depends(get_current_user)):
    return current_user
