import logging

from asgi_correlation_id import CorrelationIdFilter, CorrelationIdMiddleware
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.config import settings
from app.database import init_db
from app.middleware import AccessLogMiddleware
from app.routers import health, otp
from app.services.errors import OtpError, OtpErrorKind, otp_error

REQUEST_ID_HEADER = "X-Request-ID"

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(CorrelationIdFilter(uuid_length=32, default_value="-"))
LOGGER = logging.getLogger(__name__)

app = FastAPI(title="OTP Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[REQUEST_ID_HEADER],
)
app.add_middleware(AccessLogMiddleware)
# Added last so it wraps the others and the id is set before they log.
app.add_middleware(CorrelationIdMiddleware, header_name=REQUEST_ID_HEADER)

Instrumentator(excluded_handlers=["/metrics"]).instrument(app).expose(
    app, endpoint="/metrics", include_in_schema=False
)

app.include_router(health.router, prefix="/api")
app.include_router(otp.router, prefix="/api/v1")


def _error_body(code: str, description: str) -> dict:
    return {"error": code, "error_description": description}


@app.exception_handler(OtpError)
async def otp_error_handler(request: Request, exc: OtpError) -> JSONResponse:
    status_code = status.HTTP_400_BAD_REQUEST
    if exc.kind == OtpErrorKind.NOT_FOUND:
        status_code = status.HTTP_404_NOT_FOUND
    return JSONResponse(status_code=status_code, content=_error_body(exc.code, exc.message))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    LOGGER.warning(
        "Request validation failed method=%s path=%s errors=%s",
        request.method,
        request.url.path,
        exc.errors(),
    )
    error = otp_error(OtpErrorKind.INVALID_REQUEST)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(error.code, error.message),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.exception(
        "Unhandled error method=%s path=%s", request.method, request.url.path
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(
            "INTERNAL_SERVER_ERROR", "Something went wrong! Please try again later"
        ),
    )


@app.on_event("startup")
def startup() -> None:
    init_db()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8080)
