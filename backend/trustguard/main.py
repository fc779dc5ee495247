import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from trustguard import __version__
from trustguard.config import settings
from trustguard.errors import (
    CAAlreadyExists,
    CAIntegrityError,
    CertificateNotFound,
    InvalidServiceConfig,
    RollbackError,
    RotationInProgress,
    SigningError,
    TrustGuardError,
)
from trustguard.logging_config import setup_logging
from trustguard.schemas.common import error_response

logger = logging.getLogger(__name__)

setup_logging(settings.LOG_LEVEL)

app = FastAPI(
    title="TrustGuard",
    description="Private CA, certificate rotation and safe TLS reloads for a database server",
    version=__version__,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Most specific first
_ERROR_STATUS = [
    (CertificateNotFound, 404, "NOT_FOUND"),
    (CAAlreadyExists, 409, "CA_EXISTS"),
    (RotationInProgress, 409, "ROTATION_IN_PROGRESS"),
    (CAIntegrityError, 503, "CA_NOT_READY"),
    (SigningError, 502, "SIGNING_ERROR"),
    (InvalidServiceConfig, 500, "INVALID_SERVICE_CONFIG"),
    (RollbackError, 500, "ROLLBACK_FAILED"),
]


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(str(exc.detail), f"HTTP_{exc.status_code}").model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    return JSONResponse(
        status_code=422,
        content=error_response("Validation error", "VALIDATION_ERROR", str(exc)).model_dump(),
    )


@app.exception_handler(TrustGuardError)
async def trustguard_exception_handler(request, exc):
    status_code, code = 500, "OPERATION_FAILED"
    for error_type, mapped_status, mapped_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code, code = mapped_status, mapped_code
            break

    if status_code >= 500:
        logger.error("%s: %s", type(exc).__name__, exc)
    return JSONResponse(
        status_code=status_code,
        content=error_response(str(exc), code, exc.remediation).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.exception("Unhandled error on %s", request.url.path)
    detail = str(exc) if settings.DEBUG else "An unexpected error occurred"
    return JSONResponse(
        status_code=500,
        content=error_response("Internal server error", "INTERNAL_ERROR", detail).model_dump(),
    )


# Import and register API routers
from trustguard.api import auth, ca, certificates, crl, public, rotation, stats  # noqa: E402

app.include_router(auth.router)
app.include_router(ca.router)
app.include_router(certificates.router)
app.include_router(crl.router)
app.include_router(rotation.router)
app.include_router(stats.router)
app.include_router(public.router)


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    run()
