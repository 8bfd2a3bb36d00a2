from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String

from database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class EmailOtp(Base):
    __tablename__ = "email_otps"

    # Normalized (trimmed, lower-cased) address; one live code per email.
    email = Column(String, primary_key=True)

    # bcrypt hash of the code. Never store plaintext.
    code_hash = Column(String, nullable=False)

    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True, index=True)
    attempts = Column(Integer, default=0, nullable=False)
