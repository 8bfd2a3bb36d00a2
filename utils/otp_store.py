"""
Durable storage for pending email OTPs.

Two backends share one shape: `store.transaction(email)` opens a scope for a
single address and yields a handle with get/set/update/delete, plus discard() for
cleanup deletes whose failure must not affect the rest of the scope. All
read-modify-write work for an address happens inside one scope, which is
what serializes concurrent requests for the same email.

- SqlOtpStore locks the row (SELECT ... FOR UPDATE; BEGIN IMMEDIATE on
  SQLite) for the life of the session. Used when REDIS_URL is not set.
- RedisOtpStore keeps a hash per email and takes a Redis lock per key.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional

import redis
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from models import EmailOtp
from utils.otp_errors import OtpError, StoreConflict


logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL")
REDIS_TIMEOUT_SECONDS = float(os.getenv("REDIS_TIMEOUT_SECONDS", "5"))
# Expired hashes linger this long so they still read as "expired", not "missing".
REDIS_GRACE_SECONDS = 3600
LOCK_TIMEOUT_SECONDS = 10
LOCK_WAIT_SECONDS = 5


@dataclass
class OtpRecord:
    email: str
    code_hash: str
    created_at: Optional[datetime]
    expires_at: Optional[datetime]
    attempts: int = 0


class _SqlOtpHandle:
    def __init__(self, db: Session, email: str):
        self._db = db
        self.email = email
        self._row: Optional[EmailOtp] = None

    def _query(self):
        return self._db.query(EmailOtp).filter(EmailOtp.email == self.email)

    def get(self) -> Optional[OtpRecord]:
        row = self._query().with_for_update().first()
        self._row = row
        if row is None:
            return None
        return OtpRecord(
            email=row.email,
            code_hash=row.code_hash,
            created_at=row.created_at,
            expires_at=row.expires_at,
            attempts=int(row.attempts or 0),
        )

    def set(self, record: OtpRecord) -> None:
        # Inserts unless get() found the row earlier in this scope.
        if self._row is None:
            self._row = EmailOtp(email=self.email)
            self._db.add(self._row)
        self._row.code_hash = record.code_hash
        self._row.created_at = record.created_at
        self._row.expires_at = record.expires_at
        self._row.attempts = record.attempts
        try:
            self._db.flush()
        except IntegrityError as e:
            # Another transaction inserted the first record for this email.
            raise StoreConflict(self.email) from e

    def update(self, **fields) -> None:
        self._query().update(fields, synchronize_session="fetch")
        self._db.flush()

    def delete(self) -> None:
        self._query().delete(synchronize_session="fetch")
        self._db.flush()
        self._row = None

    def discard(self) -> None:
        """Delete in a savepoint; a failure rolls back only the delete."""
        with self._db.begin_nested():
            self._query().delete(synchronize_session="fetch")
        self._row = None


class SqlOtpStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def transaction(self, email: str) -> Iterator[_SqlOtpHandle]:
        """
        Commits on normal exit and when the body raises an OtpError, so an
        attempt increment or terminal delete persists together with the
        rejection. Anything else rolls back.
        """
        db: Session = self._session_factory()
        try:
            yield _SqlOtpHandle(db, email)
            db.commit()
        except OtpError:
            db.commit()
            raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def purge_expired(self, now: datetime) -> int:
        db: Session = self._session_factory()
        try:
            deleted = (
                db.query(EmailOtp)
                .filter(or_(EmailOtp.expires_at.is_(None), EmailOtp.expires_at < now))
                .delete(synchronize_session=False)
            )
            db.commit()
            return int(deleted or 0)
        finally:
            db.close()


def _to_ms(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return str(int(value.replace(tzinfo=timezone.utc).timestamp() * 1000))


def _from_ms(value: Optional[str]) -> Optional[datetime]:
    try:
        ms = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(ms / 1000, timezone.utc).replace(tzinfo=None)


def _encode(fields: dict) -> dict:
    out = {}
    for name, value in fields.items():
        if name in ("created_at", "expires_at"):
            out[name] = _to_ms(value)
        else:
            out[name] = str(value)
    return out


class _RedisOtpHandle:
    def __init__(self, client: "redis.Redis", email: str):
        self._r = client
        self.email = email
        self._key = f"otp:{email}"

    def get(self) -> Optional[OtpRecord]:
        data = self._r.hgetall(self._key)
        if not data:
            return None
        try:
            attempts = int(data.get("attempts") or 0)
        except ValueError:
            attempts = 0
        return OtpRecord(
            email=self.email,
            code_hash=data.get("code_hash", ""),
            created_at=_from_ms(data.get("created_at")),
            expires_at=_from_ms(data.get("expires_at")),
            attempts=attempts,
        )

    def set(self, record: OtpRecord) -> None:
        ttl = REDIS_GRACE_SECONDS
        if record.expires_at and record.created_at:
            ttl += max(0, int((record.expires_at - record.created_at).total_seconds()))
        fields = _encode(
            {
                "code_hash": record.code_hash,
                "created_at": record.created_at,
                "expires_at": record.expires_at,
                "attempts": record.attempts,
            }
        )
        pipe = self._r.pipeline()
        pipe.delete(self._key)
        pipe.hset(self._key, mapping=fields)
        pipe.expire(self._key, ttl)
        pipe.execute()

    def update(self, **fields) -> None:
        self._r.hset(self._key, mapping=_encode(fields))

    def delete(self) -> None:
        self._r.delete(self._key)

    def discard(self) -> None:
        self._r.delete(self._key)


class RedisOtpStore:
    def __init__(self, client: "redis.Redis"):
        self._r = client

    @contextmanager
    def transaction(self, email: str) -> Iterator[_RedisOtpHandle]:
        # Writes are applied immediately; the lock is what makes the scope atomic.
        with self._r.lock(
            f"otp-lock:{email}",
            timeout=LOCK_TIMEOUT_SECONDS,
            blocking_timeout=LOCK_WAIT_SECONDS,
        ):
            yield _RedisOtpHandle(self._r, email)

    def purge_expired(self, now: datetime) -> int:
        # Keys carry their own TTL.
        return 0


def build_store(session_factory: sessionmaker):
    if REDIS_URL:
        logger.info("OTP store: redis")
        client = redis.Redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=REDIS_TIMEOUT_SECONDS,
            socket_connect_timeout=REDIS_TIMEOUT_SECONDS,
        )
        return RedisOtpStore(client)
    logger.info("OTP store: sql")
    return SqlOtpStore(session_factory)
