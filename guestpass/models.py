"""SQLAlchemy models for guestpass."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()

STATUS_CONFIRMED = "CONFIRMED"
STATUS_CANCELLED = "CANCELLED"
REGISTRATION_STATUSES = {STATUS_CONFIRMED, STATUS_CANCELLED}


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Registration(Base):
    __tablename__ = "registrations"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(200), nullable=False)
    email = Column(String(320), nullable=False, index=True)
    stay = Column(String(16), nullable=False)
    adults_count = Column(Integer, nullable=False, default=1)
    children_count = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default=STATUS_CONFIRMED)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, nullable=False)

    tokens = relationship(
        "RegistrationToken",
        back_populates="registration",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_cancelled(self) -> bool:
        return self.status == STATUS_CANCELLED


class RegistrationToken(Base):
    """Capability token record. Only the SHA-256 hash of the raw token is kept."""

    __tablename__ = "registration_tokens"

    id = Column(String(36), primary_key=True, default=_uuid)
    registration_id = Column(
        String(36),
        ForeignKey("registrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    expires_at = Column(DateTime, nullable=False)
    is_revoked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    registration = relationship("Registration", back_populates="tokens")
