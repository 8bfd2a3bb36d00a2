from __future__ import annotations

import logging
import os
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from utils.otp_errors import MailerError


logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_SECURE = os.getenv("SMTP_SECURE", "false").strip().lower() == "true"
SMTP_USER = os.getenv("SMTP_USER") or os.getenv("GMAIL_USER")
SMTP_PASS = os.getenv("SMTP_PASS") or os.getenv("GMAIL_PASS")
SMTP_FROM = os.getenv("SMTP_FROM") or (f"Whisp OTP <{SMTP_USER}>" if SMTP_USER else None)
SMTP_CONNECT_TIMEOUT_SECONDS = float(os.getenv("SMTP_CONNECT_TIMEOUT_SECONDS", "10"))
SMTP_SOCKET_TIMEOUT_SECONDS = float(os.getenv("SMTP_SOCKET_TIMEOUT_SECONDS", "15"))


class SmtpMailer:
    """Direct SMTP delivery (implicit TLS when `secure`, STARTTLS otherwise)."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        user: Optional[str],
        password: Optional[str],
        from_addr: Optional[str],
        secure: bool = False,
        connect_timeout: float = SMTP_CONNECT_TIMEOUT_SECONDS,
        timeout: float = SMTP_SOCKET_TIMEOUT_SECONDS,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_addr = from_addr
        self.secure = secure
        self.connect_timeout = connect_timeout
        self.timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        # connect_timeout bounds the TCP connect and the greeting read done by
        # the constructor; later I/O uses the longer socket timeout.
        context = ssl.create_default_context()
        if self.secure:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.connect_timeout, context=context)
            server.sock.settimeout(self.timeout)
            return server
        server = smtplib.SMTP(self.host, self.port, timeout=self.connect_timeout)
        server.sock.settimeout(self.timeout)
        server.starttls(context=context)
        return server

    def send(self, *, to_email: str, subject: str, text: str, html: str) -> None:
        if not self.user or not self.password:
            raise MailerError("SMTP_USER/SMTP_PASS not set", code="smtp_failed")

        msg = MIMEMultipart("alternative")
        msg["From"] = self.from_addr or self.user
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))

        try:
            with self._connect() as server:
                server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise MailerError(f"SMTP send failed: {e}", code="smtp_failed") from e
