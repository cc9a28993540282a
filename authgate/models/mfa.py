# authgate/models/mfa.py
import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Optional
from sqlalchemy import String, Text, Enum, Boolean, BigInteger, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from authgate.core.db import Base, utcnow

if TYPE_CHECKING:
    from authgate.models.user import User


class MfaMethodType(str, enum.Enum):
    totp = "totp"
    webauthn = "webauthn"


class MfaMethod(Base):
    __tablename__ = "mfa_methods"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    type: Mapped[MfaMethodType] = mapped_column(Enum(MfaMethodType))
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # revocar = deshabilitar; el registro queda para auditoría
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)

    user: Mapped["User"] = relationship(back_populates="mfa_methods")
    totp_secret: Mapped[Optional["TotpSecret"]] = relationship(
        back_populates="method", uselist=False, cascade="all, delete-orphan", passive_deletes=True
    )
    webauthn_credential: Mapped[Optional["WebauthnCredential"]] = relationship(
        back_populates="method", uselist=False, cascade="all, delete-orphan", passive_deletes=True
    )


class TotpSecret(Base):
    __tablename__ = "totp_secrets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    mfa_method_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("mfa_methods.id", ondelete="CASCADE"), unique=True
    )
    secret: Mapped[str] = mapped_column(Text, nullable=False)   # cifrado (Fernet), nunca en claro
    confirmed: Mapped[bool] = mapped_column(Boolean, default=False)
    # último time-step aceptado (anti replay dentro de la ventana)
    last_used_step: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    method: Mapped["MfaMethod"] = relationship(back_populates="totp_secret")


class WebauthnCredential(Base):
    __tablename__ = "webauthn_credentials"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    mfa_method_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("mfa_methods.id", ondelete="CASCADE"), unique=True
    )
    credential_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)   # base64url
    public_key: Mapped[str] = mapped_column(Text, nullable=False)   # COSE (CBOR) en base64url
    sign_count: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    transports: Mapped[str | None] = mapped_column(Text, nullable=True)   # "usb,nfc,internal"
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    method: Mapped["MfaMethod"] = relationship(back_populates="webauthn_credential")

    @property
    def transport_list(self) -> list[str]:
        return [t for t in (self.transports or "").split(",") if t]
