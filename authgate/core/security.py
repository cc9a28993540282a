import functools
import secrets

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from passlib.context import CryptContext

from authgate.core.config import settings
from authgate.core.errors import HashFormatError


# argon2 por defecto; bcrypt queda sólo para verificar hashes viejos y migrarlos.
# El hash guarda sus parámetros ($argon2id$v=19$m=...,t=...,p=...).
pwd_context = CryptContext(
    schemes=["argon2", "bcrypt"],
    deprecated=["bcrypt"],
    argon2__rounds=settings.PASSWORD_ARGON2_TIME_COST,
    argon2__memory_cost=settings.PASSWORD_ARGON2_MEMORY_COST,
    argon2__parallelism=settings.PASSWORD_ARGON2_PARALLELISM,
)

# recovery codes: hash salado por código, más barato que argon2
# porque se verifican hasta N hashes por intento
code_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    pbkdf2_sha256__rounds=settings.RECOVERY_CODE_HASH_ROUNDS,
)

RECOVERY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # sin 0/O/1/I

def hash_password(plain: str) -> str:
    return pwd_context.hash(plain)

def verify_password(plain: str, hashed: str) -> bool:
    """
    Verificación en tiempo constante (la hace el propio esquema de passlib).
    Levanta HashFormatError si el hash guardado no se puede identificar.
    """
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError as exc:
        raise HashFormatError() from exc

def verify_and_update(plain: str, hashed: str) -> tuple[bool, str | None]:
    """Como verify_password pero devuelve un hash nuevo si los parámetros quedaron viejos."""
    try:
        return pwd_context.verify_and_update(plain, hashed)
    except ValueError as exc:
        raise HashFormatError() from exc

@functools.lru_cache(maxsize=1)
def dummy_password_hash() -> str:
    # se verifica contra esto cuando el email no existe, para igualar el costo
    return pwd_context.hash(secrets.token_urlsafe(16))

# --- tokens opacos ---

def new_session_token() -> str:
    # 32 bytes = 256 bits, sin claims embebidos
    return secrets.token_urlsafe(32)

# --- recovery codes ---

def generate_recovery_code(groups: int = 2, size: int = 5) -> str:
    raw = "".join(secrets.choice(RECOVERY_ALPHABET) for _ in range(groups * size))
    return "-".join(raw[i:i + size] for i in range(0, len(raw), size))

def normalize_recovery_code(code: str) -> str:
    return "".join(ch for ch in code.upper() if ch.isalnum())

def hash_recovery_code(code: str) -> str:
    return code_context.hash(normalize_recovery_code(code))

def verify_recovery_code(code: str, code_hash: str) -> bool:
    return code_context.verify(normalize_recovery_code(code), code_hash)

# --- cifrado de secretos TOTP en reposo ---

@functools.lru_cache(maxsize=1)
def _fernet() -> MultiFernet:
    keys = settings.totp_encryption_keys
    if not keys:
        raise RuntimeError("Falta TOTP_ENCRYPTION_KEYS en .env")
    return MultiFernet([Fernet(k.encode("ascii")) for k in keys])

def encrypt_secret(secret: str) -> str:
    return _fernet().encrypt(secret.encode("utf-8")).decode("ascii")

def decrypt_secret(token: str) -> str:
    try:
        return _fernet().decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken as exc:
        # nunca loguear el valor
        raise RuntimeError("No se pudo descifrar un secreto TOTP (clave rotada?)") from exc

def rotate_secret(token: str) -> str:
    """Re-cifra con la clave primaria actual (rotación de claves)."""
    return _fernet().rotate(token.encode("ascii")).decode("ascii")
