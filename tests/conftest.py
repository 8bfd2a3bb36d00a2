import os
import re
from datetime import datetime
from unittest.mock import MagicMock

# Set env vars BEFORE any project imports; modules read them at import time.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["OTP_BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET"] = "test-secret"
os.environ.pop("REDIS_URL", None)
os.environ.pop("BREVO_API_KEY", None)

import pytest

import models  # noqa: F401  registers tables on Base
from database import Base, SessionLocal, engine
from utils.identity import LocalIdentityService
from utils.otp_store import SqlOtpStore


T0 = datetime(2026, 1, 1, 12, 0, 0)


@pytest.fixture
def session_factory():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store(session_factory):
    return SqlOtpStore(session_factory)


@pytest.fixture
def mailer():
    return MagicMock()


@pytest.fixture
def identity(session_factory):
    return LocalIdentityService(session_factory, secret="test-secret")


def sent_code(mailer) -> str:
    """The code from the most recent email handed to a mocked mailer."""
    text = mailer.send.call_args.kwargs["text"]
    return re.search(r"\b(\d{6})\b", text).group(1)
