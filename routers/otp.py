from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator

from utils.otp_errors import OtpError
from utils.otp_service import request_otp, verify_otp


logger = logging.getLogger(__name__)

router = APIRouter(tags=["otp"])


def _as_text(v: Any) -> Optional[str]:
    # Clients send numbers for codes (and occasionally emails); treat them as text.
    if v is None or isinstance(v, str):
        return v
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    return None


class SendOtpIn(BaseModel):
    email: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def coerce_text(cls, v):
        return _as_text(v)


class VerifyOtpIn(BaseModel):
    email: Optional[str] = None
    code: Optional[str] = None

    @field_validator("email", "code", mode="before")
    @classmethod
    def coerce_text(cls, v):
        return _as_text(v)


def get_otp_store(request: Request):
    return request.app.state.otp_store


def get_mailer(request: Request):
    return request.app.state.mailer


def get_identity(request: Request):
    return request.app.state.identity


def _error(status_code: int, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code})


# Bodies FastAPI rejects before a handler runs (bad JSON, non-object body).
BODY_ERROR_CODES = {"/sendOtp": "email_required", "/verifyOtp": "missing_fields"}


async def body_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Rejected request body on %s", request.url.path)
    return _error(400, BODY_ERROR_CODES.get(request.url.path, "invalid_request"))


@router.post("/sendOtp")
def send_otp(
    payload: Optional[SendOtpIn] = None,
    store=Depends(get_otp_store),
    mailer=Depends(get_mailer),
):
    payload = payload or SendOtpIn()
    try:
        request_otp(email=payload.email, store=store, mailer=mailer)
    except OtpError as e:
        return _error(e.status_code, e.code)
    except Exception:
        logger.exception("sendOtp failed")
        return _error(500, "send_failed")
    return {"ok": True}


@router.post("/verifyOtp")
def verify_otp_route(
    payload: Optional[VerifyOtpIn] = None,
    store=Depends(get_otp_store),
    identity=Depends(get_identity),
):
    payload = payload or VerifyOtpIn()
    try:
        token = verify_otp(email=payload.email, code=payload.code, store=store, identity=identity)
    except OtpError as e:
        return _error(e.status_code, e.code)
    except Exception:
        logger.exception("verifyOtp failed")
        return _error(500, "verify_failed")
    return {"customToken": token}
