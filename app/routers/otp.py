import asyncio
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request

from app.config import settings
from app.schemas.otp import (
    ErrorResponse,
    OtpRequest,
    OtpResponse,
    OtpValidateRequest,
    OtpValidateResponse,
)
from app.services.context import RequestContext
from app.services.otp import OtpService, otp_service

LOGGER = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 0.05

router = APIRouter(
    prefix="/otp",
    tags=["otp"],
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)


def get_otp_service() -> OtpService:
    return otp_service


async def cancel_on_disconnect(request: Request, ctx: RequestContext) -> None:
    while not ctx.cancelled:
        if await request.is_disconnected():
            LOGGER.warning(
                "Client disconnected, cancelling method=%s path=%s",
                request.method,
                request.url.path,
            )
            ctx.cancel()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def get_request_context(request: Request) -> AsyncIterator[RequestContext]:
    ctx = RequestContext.with_timeout(settings.request_timeout_seconds)
    watcher = asyncio.create_task(cancel_on_disconnect(request, ctx))
    try:
        yield ctx
    finally:
        watcher.cancel()


@router.post("/request", response_model=OtpResponse)
def request_otp(
    payload: OtpRequest,
    service: OtpService = Depends(get_otp_service),
    ctx: RequestContext = Depends(get_request_context),
) -> OtpResponse:
    otp = service.create(payload.user_id, ctx)
    return OtpResponse(user_id=otp.user_id, otp=otp.code)


@router.post("/validate", response_model=OtpValidateResponse)
def validate_otp(
    payload: OtpValidateRequest,
    service: OtpService = Depends(get_otp_service),
    ctx: RequestContext = Depends(get_request_context),
) -> OtpValidateResponse:
    otp = service.validate(payload.user_id, payload.otp, ctx)
    return OtpValidateResponse(
        user_id=otp.user_id,
        message="OTP Validated successfully",
    )
