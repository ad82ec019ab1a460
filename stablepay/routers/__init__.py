"""API routers for the StablePay settlement engine."""
from fastapi import APIRouter

from . import chain, fees, health, payments, settlements


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(payments.router)
    api_router.include_router(fees.router)
    api_router.include_router(chain.router)
    api_router.include_router(settlements.router)
    return api_router
