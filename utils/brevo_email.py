from __future__ import annotations

import logging
import os
from typing import Optional

import requests

from utils.otp_errors import MailerError


logger = logging.getLogger(__name__)

BREVO_URL = "https://api.brevo.com/v3/smtp/email"
BREVO_API_KEY = os.getenv("BREVO_API_KEY")
BREVO_FROM = os.getenv("BREVO_FROM") or os.getenv("EMAIL_FROM") or os.getenv("SMTP_FROM")
BREVO_FROM_NAME = os.getenv("BREVO_FROM_NAME", "Whisp")


class BrevoMailer:
    """
    Sends email through the Brevo transactional email API.
    Requires:
      - BREVO_API_KEY
      - BREVO_FROM (email) OR EMAIL_FROM/SMTP_FROM
    """

    def __init__(
        self,
        *,
        api_key: str,
        from_email: Optional[str],
        from_name: str = BREVO_FROM_NAME,
        timeout: float = 15,
        http: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout
        self._http = http or requests.Session()

    def send(self, *, to_email: str, subject: str, text: str, html: str) -> None:
        if not self.from_email:
            raise MailerError("BREVO_FROM (or EMAIL_FROM/SMTP_FROM) is not set", code="brevo_failed")

        payload = {
            "sender": {"email": self.from_email, "name": self.from_name},
            "to": [{"email": to_email}],
            "subject": subject,
            "htmlContent": html,
            "textContent": text,
        }
        try:
            resp = self._http.post(
                BREVO_URL,
                headers={
                    "accept": "application/json",
                    "api-key": self.api_key,
                    "content-type": "application/json",
                },
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise MailerError(f"Brevo request failed: {e}", code="brevo_failed") from e

        if resp.status_code >= 300:
            logger.error("Brevo send failed (%s): %s", resp.status_code, resp.text)
            raise MailerError(f"Brevo send failed ({resp.status_code})", code="brevo_failed")
