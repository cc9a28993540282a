from fastapi import APIRouter, Depends

from authgate.api.deps import get_auth_flow, get_current_user
from authgate.models.user import User
from authgate.schemas.mfa import MfaMethodOut
from authgate.services.auth_flow import AuthFlow

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/mfa-methods/{method_id}/revoke", response_model=MfaMethodOut)
async def revoke_mfa_method(
    method_id: str,
    current_user: User = Depends(get_current_user),
    flow: AuthFlow = Depends(get_auth_flow),
):
    # el chequeo de admin lo hace el orquestador (y deja evento)
    return await flow.admin_revoke_method(current_user, method_id)
