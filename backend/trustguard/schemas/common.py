from typing import Any, Optional

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    code: str
    detail: str


class ApiResponse(BaseModel):
    """Envelope shared by every JSON route."""

    success: bool
    message: str
    data: Optional[Any] = None
    error: Optional[ErrorDetail] = None


def success_response(message: str = "Success", data: Optional[Any] = None) -> ApiResponse:
    return ApiResponse(success=True, message=message, data=data)


def error_response(message: str, code: str = "ERROR", detail: Optional[str] = None) -> ApiResponse:
    return ApiResponse(
        success=False,
        message=message,
        error=ErrorDetail(code=code, detail=detail or message),
    )
