from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from chatsync.store.base import StoredDocument


class SyncError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: object | None = None,
    ) -> None:
        self.code = code or self.default_code
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundError(SyncError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "not_found"


class InvalidArgumentError(SyncError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_code = "invalid_argument"


class UnauthorizedError(SyncError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "unauthorized"


class AuthenticationError(SyncError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "invalid_token"


class TransientNetworkError(SyncError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "transient_network"


class ConflictError(SyncError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "conflict"

    def __init__(
        self,
        message: str,
        *,
        existing: StoredDocument | None = None,
        code: str | None = None,
        details: object | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.existing = existing


def success_response(data: object, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"data": data})


def error_response(
    *,
    status_code: int,
    code: str,
    message: str,
    details: object | None = None,
) -> JSONResponse:
    error_payload: dict[str, object] = {"code": code, "message": message}
    if details is not None:
        error_payload["details"] = details
    payload: dict[str, object] = {"error": error_payload}
    return JSONResponse(status_code=status_code, content=payload)


def add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(SyncError)
    async def handle_sync_error(_: Request, exc: SyncError) -> JSONResponse:
        return error_response(
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="validation_error",
            message="Request validation failed",
            details=jsonable_errors(exc.errors()),
        )

    @app.exception_handler(HTTPException)
    async def handle_http_error(_: Request, exc: HTTPException) -> JSONResponse:
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return error_response(
            status_code=exc.status_code,
            code="http_error",
            message=message,
            details=None if isinstance(exc.detail, str) else exc.detail,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(_: Request, __: Exception) -> JSONResponse:
        return error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code="internal_error",
            message="Internal server error",
        )


def jsonable_errors(errors: object) -> object:
    # pydantic puts the raw exception under "ctx", which JSONResponse cannot encode
    if not isinstance(errors, (list, tuple)):
        return errors
    cleaned: list[object] = []
    for item in errors:
        if isinstance(item, dict):
            cleaned.append({key: value for key, value in item.items() if key not in {"ctx", "input", "url"}})
        else:
            cleaned.append(item)
    return cleaned
