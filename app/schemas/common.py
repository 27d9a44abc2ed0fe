"""
Common Schemas
==============

Shared Pydantic schemas used across the application.
"""

from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class BaseResponse(BaseModel, Generic[T]):
    """Standard API response wrapper."""

    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None


class ErrorDetail(BaseModel):
    """Error detail structure; extra keys depend on the error code."""

    code: str
    message: str
    field: Optional[str] = None

    model_config = {"extra": "allow"}


class ErrorResponse(BaseModel):
    """Standard error response."""

    success: bool = False
    error: ErrorDetail


# Error envelopes for OpenAPI docs
ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Rejected request"},
    401: {"model": ErrorResponse, "description": "Not authenticated"},
    503: {"model": ErrorResponse, "description": "Subscription store unavailable"},
}
