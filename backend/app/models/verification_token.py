from __future__ import annotations

import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.base import Base


class TokenPurpose(str, enum.Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class InvalidationReason(str, enum.Enum):
    SUPERSEDED = "superseded"
    EXPIRED = "expired"


class VerificationToken(Base):
    __tablename__ = "verification_tokens"

    id = Column(Integer, primary_key=True)

    # SHA-256(plaintext || TOKEN_SECRET). The plaintext itself is never stored.
    hashed_token = Column(String(64), nullable=False)

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    purpose = Column(String(32), nullable=False)
    sequence = Column(Integer, nullable=False)

    is_valid = Column(Boolean, nullable=False, default=True, server_default="true")
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Terminal transitions; each is written at most once.
    used_at = Column(DateTime(timezone=True), nullable=True)
    invalidated_at = Column(DateTime(timezone=True), nullable=True)
    invalidation_reason = Column(String(32), nullable=True)

    user = relationship("User", back_populates="verification_tokens")

    __table_args__ = (
        UniqueConstraint("hashed_token", name="uq_verification_tokens_hashed_token"),
        UniqueConstraint("user_id", "purpose", "sequence", name="uq_verification_tokens_user_purpose_sequence"),
        Index("ix_verification_tokens_purpose_valid_expires", "purpose", "is_valid", "expires_at"),
        # At most one live token per (user, purpose), enforced by the database itself.
        Index(
            "uq_verification_tokens_single_valid",
            "user_id",
            "purpose",
            unique=True,
            postgresql_where=text("is_valid"),
            sqlite_where=text("is_valid"),
        ),
    )

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def __repr__(self) -> str:
        return (
            f"VerificationToken(id={self.id}, user_id={self.user_id}, purpose={self.purpose!r}, "
            f"sequence={self.sequence}, is_valid={self.is_valid})"
        )
