from authgate.models.user import User
from authgate.models.mfa import MfaMethod, MfaMethodType, TotpSecret, WebauthnCredential
from authgate.models.recovery_code import RecoveryCode
from authgate.models.session import AuthSession, SessionType
