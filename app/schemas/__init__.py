"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from app.schemas.common import (
    BaseResponse,
    ErrorResponse,
)

__all__ = [
    "BaseResponse",
    "ErrorResponse",
]
