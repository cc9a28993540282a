from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core.db import get_db
from authgate.core.errors import SessionExpired, Unauthenticated
from authgate.core.events import RequestContext, classify_user_agent
from authgate.models.session import AuthSession, SessionType
from authgate.models.user import User
from authgate.services.auth_flow import AuthFlow

# auto_error=False: sin header respondemos con nuestro propio 401 (mismo formato que el resto)
bearer = HTTPBearer(auto_error=False)


def request_context(request: Request) -> RequestContext:
    ip = request.client.host if request.client else None
    return RequestContext(ip=ip, user_agent_class=classify_user_agent(request.headers.get("user-agent")))

async def get_auth_flow(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> AuthFlow:
    state = request.app.state
    return AuthFlow(
        db,
        events=getattr(state, "event_sink", None),
        rate_limiter=getattr(state, "rate_limiter", None),
        context=request_context(request),
    )

def get_token(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> str:
    if creds is None or not creds.credentials:
        raise Unauthenticated()
    return creds.credentials

async def get_full_session(
    token: str = Depends(get_token),
    flow: AuthFlow = Depends(get_auth_flow),
) -> AuthSession:
    try:
        return await flow.require_session(token, SessionType.full)
    except SessionExpired as exc:
        raise Unauthenticated() from exc

async def get_current_user(
    session: AuthSession = Depends(get_full_session),
    flow: AuthFlow = Depends(get_auth_flow),
) -> User:
    return await flow.current_user(session)
