"""
Errores tipados del núcleo de autenticación.

Cada error lleva un `code` estable (para clientes), un mensaje genérico para
el usuario y el status HTTP. Los mensajes nunca indican cuál de los factores
(email, password, código) falló.
"""

_GENERIC = "No se pudo completar la autenticación"


class AuthError(Exception):
    code: str = "auth_error"
    message: str = _GENERIC
    status_code: int = 400
    retryable: bool = False

    def __init__(self, detail: str | None = None):
        # `detail` es para logs; al cliente sólo le llega `message`
        super().__init__(detail or self.message)
        self.detail = detail


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401


class AccountDisabled(AuthError):
    code = "account_disabled"
    message = "Usuario inactivo"
    status_code = 403


class Unauthenticated(AuthError):
    code = "unauthenticated"
    message = "Sesión inválida o expirada"
    status_code = 401


class EmailAlreadyRegistered(AuthError):
    code = "email_taken"
    message = "El email ya está registrado."
    status_code = 409


class NotFound(AuthError):
    code = "not_found"
    message = "Recurso no encontrado"
    status_code = 404


class SessionExpired(NotFound):
    """Sesión ausente, expirada o con id malformado (indistinguibles)."""
    code = "session_expired"
    message = "Sesión inválida o expirada"
    status_code = 401


class SessionTypeMismatch(AuthError):
    code = "session_type_mismatch"
    message = "Sesión inválida o expirada"
    status_code = 401


class InvalidCode(AuthError):
    code = "invalid_code"


class AlreadyUsed(AuthError):
    code = "already_used"


class AttemptsExhausted(AuthError):
    code = "attempts_exhausted"
    message = "Demasiados intentos, volvé a iniciar sesión"
    status_code = 429


class RateLimited(AuthError):
    code = "rate_limited"
    message = "Demasiados intentos, probá más tarde"
    status_code = 429


class AttestationError(AuthError):
    code = "attestation_error"
    message = "No se pudo registrar la llave de seguridad"


class SignatureInvalid(AuthError):
    code = "signature_invalid"
    status_code = 401


class CounterReplay(AuthError):
    code = "counter_replay"
    status_code = 401


class Forbidden(AuthError):
    code = "forbidden"
    message = "Permiso denegado"
    status_code = 403


class StorageUnavailable(AuthError):
    code = "storage_unavailable"
    message = "Servicio no disponible, reintentá en unos segundos"
    status_code = 503
    retryable = True


class HashFormatError(AuthError):
    """El hash almacenado no se puede identificar (formato desconocido)."""
    code = "hash_format_error"
    status_code = 500
