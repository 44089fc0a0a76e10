import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


class AppError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ChatSyncError(AppError):
    pass


class StoreError(ChatSyncError):
    """Raised by a document store adapter when a read, write or stream fails."""

    def __init__(self, message: str, status_code: int = 503):
        super().__init__(message, status_code)


class WriteError(ChatSyncError):
    """An atomic batch or single-document write was rejected by the store."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message, status_code)


class SendError(WriteError):
    pass


class CreateError(WriteError):
    pass


class SubscriptionError(ChatSyncError):
    def __init__(self, message: str, status_code: int = 503):
        super().__init__(message, status_code)


class SessionError(ChatSyncError):
    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message, status_code)


class NotFoundError(ChatSyncError):
    def __init__(self, message: str, status_code: int = 404):
        super().__init__(message, status_code)


class PermissionDeniedError(ChatSyncError):
    def __init__(self, message: str, status_code: int = 403):
        super().__init__(message, status_code)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(_: Request, exc: AppError):
        logger.warning("%s: %s", type(exc).__name__, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(ValueError)
    async def value_error_handler(_: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_error_handler(_: Request, exc: ValidationError):  # pragma: no cover
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_: Request, exc: StarletteHTTPException):  # pragma: no cover
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
