from __future__ import annotations

import logging

from utils import brevo_email, smtp_email
from utils.brevo_email import BrevoMailer
from utils.smtp_email import SmtpMailer


logger = logging.getLogger(__name__)


def build_mailer():
    """
    Picks the transport once at startup: the Brevo API when BREVO_API_KEY is
    set, direct SMTP otherwise. Both expose the same `send`.
    """
    if brevo_email.BREVO_API_KEY:
        logger.info("Mail transport: brevo")
        return BrevoMailer(api_key=brevo_email.BREVO_API_KEY, from_email=brevo_email.BREVO_FROM)

    if not smtp_email.SMTP_USER or not smtp_email.SMTP_PASS:
        logger.warning("SMTP_USER/SMTP_PASS not set. Emails will fail.")
    logger.info("Mail transport: smtp (%s:%s)", smtp_email.SMTP_HOST, smtp_email.SMTP_PORT)
    return SmtpMailer(
        host=smtp_email.SMTP_HOST,
        port=smtp_email.SMTP_PORT,
        user=smtp_email.SMTP_USER,
        password=smtp_email.SMTP_PASS,
        from_addr=smtp_email.SMTP_FROM,
        secure=smtp_email.SMTP_SECURE,
    )
