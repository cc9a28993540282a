# authgate/models/session.py
import enum
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional
from sqlalchemy import String, Enum, Integer, JSON, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from authgate.core.db import Base, utcnow

if TYPE_CHECKING:
    from authgate.models.user import User


class SessionType(str, enum.Enum):
    preauth = "preauth"
    full = "full"


class AuthSession(Base):
    __tablename__ = "sessions"

    # el id ES el token opaco que recibe el cliente
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True
    )
    type: Mapped[SessionType] = mapped_column(Enum(SessionType))
    data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)

    user: Mapped[Optional["User"]] = relationship(back_populates="sessions")
