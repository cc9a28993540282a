# authgate/core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore")

    APP_NAME: str = "AuthGate"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:5173,http://127.0.0.1:5173"

    # si viene DATABASE_URL se ignoran los DB_*
    DATABASE_URL: str | None = None
    DB_HOST: str = "localhost"
    DB_PORT: int = 3306
    DB_USER: str = "authgate"
    DB_PASSWORD: str = ""
    DB_NAME: str = "authgate"
    STORAGE_TIMEOUT_SECONDS: float = 5.0
    # barrido periódico de sesiones vencidas y TOTP sin confirmar; 0 lo apaga
    MAINTENANCE_INTERVAL_SECONDS: int = 300

    # --- sesiones ---
    PREAUTH_TTL_SECONDS: int = 300
    FULL_SESSION_TTL_SECONDS: int = 60 * 60 * 12
    SESSION_SLIDING: bool = True
    MFA_MAX_ATTEMPTS: int = 5

    # --- passwords (argon2) ---
    PASSWORD_ARGON2_TIME_COST: int = 3
    PASSWORD_ARGON2_MEMORY_COST: int = 65536   # KiB
    PASSWORD_ARGON2_PARALLELISM: int = 4

    # --- TOTP ---
    TOTP_ISSUER: str = "AuthGate"
    TOTP_VALID_WINDOW: int = 1
    TOTP_UNCONFIRMED_TTL_SECONDS: int = 15 * 60
    TOTP_ENCRYPTION_KEYS: str = Field(...)   # claves Fernet separadas por coma, la primera cifra

    # --- WebAuthn ---
    WEBAUTHN_RP_ID: str = "localhost"
    WEBAUTHN_RP_NAME: str = "AuthGate"
    WEBAUTHN_ORIGIN: str = "http://localhost:5173"
    WEBAUTHN_CHALLENGE_TTL_SECONDS: int = 120
    WEBAUTHN_ATTESTATION_FORMATS: str = "none,packed"

    # --- recovery codes ---
    RECOVERY_CODE_COUNT: int = 10
    RECOVERY_CODE_HASH_ROUNDS: int = 29000

    @property
    def async_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (f"mysql+aiomysql://{self.DB_USER}:{self.DB_PASSWORD}"
                f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}?charset=utf8mb4")

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def totp_encryption_keys(self) -> list[str]:
        return [k.strip() for k in self.TOTP_ENCRYPTION_KEYS.split(",") if k.strip()]

    @property
    def attestation_formats(self) -> set[str]:
        return {f.strip() for f in self.WEBAUTHN_ATTESTATION_FORMATS.split(",") if f.strip()}


settings = Settings()  # type: ignore[call-arg]
