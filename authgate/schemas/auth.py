from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class SignUpIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=256)

class SignInIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=256)

class RecoverySignInIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=256)
    code: str = Field(..., min_length=1, max_length=64)

class PasswordChangeIn(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=8, max_length=256)

class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: EmailStr
    is_active: bool
    is_admin: bool
    mfa_recheck_required: bool

class SessionOut(BaseModel):
    session_token: str
    token_type: str = "bearer"
    expires_at: datetime

# --- sign-in: o sesión full, o preauth + métodos disponibles ---
class SignInOut(BaseModel):
    mfa_required: bool
    session_token: str | None = None
    expires_at: datetime | None = None
    preauth_token: str | None = None
    methods: list[str] = []
