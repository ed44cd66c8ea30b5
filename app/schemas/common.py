"""
Common schemas for API responses.
"""
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Body of every error response."""

    detail: str
    code: str
    retryable: bool = False
