"""API endpoints for the Guideway Booking Platform."""

from fastapi import APIRouter
from .auth import router as auth_router
from .bookings import router as bookings_router
from .payments import router as payments_router
from .reviews import router as reviews_router
from .earnings import router as earnings_router
from .admin import router as admin_router
from ..schemas.common import ErrorResponse

# Create main API router
api_router = APIRouter(
    prefix="/api/v1",
    responses={
        code: {"model": ErrorResponse}
        for code in (400, 401, 403, 404, 409, 422, 502)
    }
)

# Include all routers
api_router.include_router(auth_router)
api_router.include_router(bookings_router)
api_router.include_router(payments_router)
api_router.include_router(reviews_router)
api_router.include_router(earnings_router)
api_router.include_router(admin_router)

__all__ = ["api_router"]
