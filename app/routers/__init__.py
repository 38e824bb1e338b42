"""API routers for the marketplace payments backend."""
from fastapi import APIRouter

from . import alerts, bookings, escrow, health, payments, payouts


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(payments.router)
    api_router.include_router(escrow.router)
    api_router.include_router(bookings.router)
    api_router.include_router(payouts.router)
    api_router.include_router(alerts.router)
    return api_router
