"""
Email OTP lifecycle.

Per address: NONE -> PENDING(attempts=0) -> PENDING(attempts=k, k<MAX)
-> VERIFIED | EXPIRED | EXHAUSTED -> NONE. Any accepted request_otp resets
to PENDING(0); the latest request always wins.

The store, mailer and identity service are passed in by the caller; nothing
here holds state between calls.
"""

from __future__ import annotations

import logging
import os
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

import bcrypt

from utils.otp_errors import (
    EmailRequired,
    InvalidCode,
    MailerError,
    MissingFields,
    OtpExpired,
    OtpNotFound,
    RateLimited,
    SendFailed,
    StoreConflict,
    TooManyAttempts,
    VerifyFailed,
)
from utils.otp_store import OtpRecord


logger = logging.getLogger(__name__)

OTP_EXP_MIN = int(os.getenv("OTP_EXP_MINUTES", "5"))
OTP_COOLDOWN_SECONDS = int(os.getenv("OTP_COOLDOWN_SECONDS", "10"))
OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))
OTP_BCRYPT_ROUNDS = int(os.getenv("OTP_BCRYPT_ROUNDS", "10"))
OTP_SUBJECT = os.getenv("OTP_SUBJECT", "Your verification code")


def _now() -> datetime:
    return datetime.utcnow()


def normalize_email(raw) -> str:
    return str(raw if raw is not None else "").strip().lower()


def generate_otp() -> str:
    return f"{100000 + secrets.randbelow(900000)}"


def hash_otp(code: str, *, rounds: int = OTP_BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def check_otp(code: str, code_hash: str) -> bool:
    if not code_hash:
        return False
    try:
        return bcrypt.checkpw(code.encode("utf-8"), code_hash.encode("utf-8"))
    except ValueError:
        # Unparseable hash in the store.
        return False


def _best_effort(action: Callable[[], None], what: str) -> None:
    # Cleanup whose failure must not change the caller's outcome; logged, then discarded.
    try:
        action()
    except Exception:
        logger.warning("Best-effort %s failed", what, exc_info=True)


def _otp_message(code: str, minutes: int) -> tuple[str, str]:
    text = f"Your verification code is: {code} (expires in {minutes} minutes)"
    html = f"""
    <div style="font-family:Arial,sans-serif">
      <h2>Verification code</h2>
      <p>Your code is:</p>
      <div style="font-size:28px;font-weight:700;letter-spacing:2px">{code}</div>
      <p>This code expires in {minutes} minutes.</p>
    </div>
    """
    return text, html


def request_otp(
    *,
    email,
    store,
    mailer,
    now: Optional[datetime] = None,
    rounds: int = OTP_BCRYPT_ROUNDS,
) -> None:
    """
    Issues a fresh code for `email`, replacing any pending one, and mails it.

    Raises EmailRequired, RateLimited (a code was issued less than
    OTP_COOLDOWN_SECONDS ago) or SendFailed. A failed send still leaves the
    new record stored, so the cooldown applies to the retry as well.
    """
    email = normalize_email(email)
    if not email:
        raise EmailRequired()

    now = now or _now()
    code = generate_otp()

    try:
        with store.transaction(email) as otp:
            existing = otp.get()
            if existing and existing.created_at is not None:
                if (now - existing.created_at).total_seconds() < OTP_COOLDOWN_SECONDS:
                    logger.info("OTP request rate limited for %s", email)
                    raise RateLimited()

            otp.set(
                OtpRecord(
                    email=email,
                    code_hash=hash_otp(code, rounds=rounds),
                    created_at=now,
                    expires_at=now + timedelta(minutes=OTP_EXP_MIN),
                    attempts=0,
                )
            )
    except StoreConflict as e:
        # A concurrent request created the first record for this address.
        logger.info("OTP request rate limited for %s (concurrent issue)", email)
        raise RateLimited() from e

    text, html = _otp_message(code, OTP_EXP_MIN)
    try:
        mailer.send(to_email=email, subject=OTP_SUBJECT, text=text, html=html)
    except MailerError as e:
        logger.error("OTP email to %s failed: %s", email, e)
        raise SendFailed(e.code) from e

    logger.info("OTP issued for %s", email)


def verify_otp(*, email, code, store, identity, now: Optional[datetime] = None) -> str:
    """
    Redeems `code` for `email` and returns a token minted for that user.

    Raises MissingFields, OtpNotFound, OtpExpired, TooManyAttempts,
    InvalidCode or VerifyFailed. The record is consumed before the identity
    service is called, so a VerifyFailed cannot be retried with the same code.
    """
    email = normalize_email(email)
    code = str(code if code is not None else "").strip()
    if not email or not code:
        raise MissingFields()

    now = now or _now()

    with store.transaction(email) as otp:
        record = otp.get()
        if record is None:
            raise OtpNotFound()

        if record.expires_at is None or now > record.expires_at:
            _best_effort(otp.discard, "delete of expired OTP")
            logger.info("Expired OTP presented for %s", email)
            raise OtpExpired()

        attempts = record.attempts + 1
        if attempts > OTP_MAX_ATTEMPTS:
            otp.delete()
            logger.info("OTP attempts exhausted for %s", email)
            raise TooManyAttempts()

        if not check_otp(code, record.code_hash):
            otp.update(attempts=attempts)
            logger.info("Wrong OTP for %s (attempt %s/%s)", email, attempts, OTP_MAX_ATTEMPTS)
            raise InvalidCode()

        _best_effort(otp.discard, "delete of redeemed OTP")

    try:
        uid = identity.get_or_create_user(email)
        token = identity.mint_token(uid)
    except Exception as e:
        logger.exception("Identity step failed for %s after OTP redemption", email)
        raise VerifyFailed() from e

    logger.info("OTP verified for %s", email)
    return token
