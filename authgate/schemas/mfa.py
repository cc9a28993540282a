from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from authgate.models.mfa import MfaMethodType


class MfaMethodOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: MfaMethodType
    label: str | None = None
    enabled: bool
    created_at: datetime

# --- TOTP ---
class TotpSetupIn(BaseModel):
    label: str | None = Field(default=None, max_length=100)

class TotpSetupOut(BaseModel):
    method_id: str
    secret: str
    otpauth_url: str

class TotpConfirmIn(BaseModel):
    method_id: str
    code: str = Field(..., min_length=6, max_length=10)

class CodeIn(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)

# --- WebAuthn ---
# el cuerpo de la credencial llega tal cual lo arma el browser
# (PublicKeyCredential serializado: id, rawId, type, response{...} en base64url)
class WebauthnRegisterCompleteIn(BaseModel):
    credential: dict[str, Any]
    label: str | None = Field(default=None, max_length=100)

class WebauthnAssertionIn(BaseModel):
    credential: dict[str, Any]

class WebauthnOptionsOut(BaseModel):
    public_key: dict[str, Any] = Field(..., serialization_alias="publicKey")

# --- Recovery ---
class RecoveryCodesOut(BaseModel):
    codes: list[str]
