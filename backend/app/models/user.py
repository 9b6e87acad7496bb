# app/models/user.py
from sqlalchemy import Boolean, Column, DateTime, Integer, String, func
from sqlalchemy.orm import relationship

from app.core.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    is_email_verified = Column(Boolean, nullable=False, default=False, server_default="false")

    email_verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # user → verification tokens (rows are never deleted by the token core itself)
    verification_tokens = relationship(
        "VerificationToken",
        back_populates="user",
        passive_deletes=True,
    )
