"""
Errors raised by the OTP flows.

Every error carries the HTTP status and the short machine-readable code
returned to clients. Nothing else about the failure leaves the server.
"""

from __future__ import annotations

from typing import Optional


class OtpError(Exception):
    status_code = 400
    code = "otp_error"

    def __init__(self, code: Optional[str] = None):
        if code:
            self.code = code
        super().__init__(self.code)


class InputError(OtpError):
    status_code = 400


class EmailRequired(InputError):
    code = "email_required"


class MissingFields(InputError):
    code = "missing_fields"


class RateLimited(OtpError):
    status_code = 429
    code = "rate_limited"


class VerificationRejected(OtpError):
    status_code = 400


class OtpNotFound(VerificationRejected):
    code = "otp_not_found"


class OtpExpired(VerificationRejected):
    code = "otp_expired"


class InvalidCode(VerificationRejected):
    code = "invalid_code"


class TooManyAttempts(VerificationRejected):
    status_code = 429
    code = "too_many_attempts"


class DependencyFailure(OtpError):
    status_code = 500


class SendFailed(DependencyFailure):
    code = "send_failed"


class VerifyFailed(DependencyFailure):
    code = "verify_failed"


class MailerError(Exception):
    """Raised by a mail transport when a message could not be handed off."""

    def __init__(self, message: str, *, code: str = "send_failed"):
        super().__init__(message)
        self.code = code


class StoreConflict(Exception):
    """Two transactions raced to create the first record for one email."""
