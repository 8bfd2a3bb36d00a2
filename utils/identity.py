from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from models import User


logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "change_me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "60"))


def _now() -> datetime:
    return datetime.utcnow()


class LocalIdentityService:
    """
    Users keyed by email in our own database, with HS256 tokens minted for
    them. Any address that verifies an OTP gets an account.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        secret: str = JWT_SECRET,
        algorithm: str = JWT_ALG,
        expires_minutes: int = JWT_EXP_MIN,
    ):
        self._session_factory = session_factory
        self.secret = secret
        self.algorithm = algorithm
        self.expires_minutes = expires_minutes

    def get_user_by_email(self, email: str) -> Optional[str]:
        db: Session = self._session_factory()
        try:
            user = db.query(User).filter(User.email == email).first()
            return str(user.id) if user else None
        finally:
            db.close()

    def create_user(self, email: str) -> str:
        db: Session = self._session_factory()
        try:
            user = User(email=email)
            db.add(user)
            db.commit()
            db.refresh(user)
            logger.info("Created user %s", user.id)
            return str(user.id)
        except IntegrityError:
            # Lost a race with a concurrent create for the same address.
            db.rollback()
            user = db.query(User).filter(User.email == email).first()
            if not user:
                raise
            return str(user.id)
        finally:
            db.close()

    def get_or_create_user(self, email: str) -> str:
        uid = self.get_user_by_email(email)
        if uid is not None:
            return uid
        return self.create_user(email)

    def mint_token(self, uid: str) -> str:
        now = _now()
        payload = {
            "sub": str(uid),
            "iat": int((now - datetime(1970, 1, 1)).total_seconds()),
            "exp": int((now + timedelta(minutes=self.expires_minutes) - datetime(1970, 1, 1)).total_seconds()),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode_token(self, token: str) -> Optional[str]:
        """
        Returns the uid a token was minted for, or None if it is invalid or
        expired. For services that accept the minted token as a bearer
        credential; the OTP endpoints themselves only mint.
        """
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError:
            return None
        return payload.get("sub")
