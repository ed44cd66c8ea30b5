"""API v1 router."""
from fastapi import APIRouter

from app.api.v1 import bookings, exams, payments
from app.schemas.common import ErrorResponse


def error_responses(*status_codes: int) -> dict:
    """OpenAPI entries for the ``{detail, code, retryable}`` error body."""
    return {code: {"model": ErrorResponse} for code in status_codes}


api_router = APIRouter()

api_router.include_router(
    bookings.router,
    prefix="/bookings",
    tags=["Bookings"],
    responses=error_responses(400, 401, 404, 502, 503),
)
api_router.include_router(
    payments.router,
    prefix="/payments",
    tags=["Payments"],
    responses=error_responses(400, 503),
)
api_router.include_router(
    exams.router,
    prefix="/exams",
    tags=["Exams"],
    responses=error_responses(401, 403, 404, 409),
)
