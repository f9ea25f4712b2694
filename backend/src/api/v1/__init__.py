"""
API v1 package initialization.

Collects the v1 routers into a single router mounted under the API prefix.
"""

from fastapi import APIRouter

from src.api.v1.couriers import router as couriers_router
from src.api.v1.orders import router as orders_router
from src.api.v1.realtime import router as realtime_router
from src.api.v1.sessions import router as sessions_router

api_router = APIRouter()
api_router.include_router(orders_router)
api_router.include_router(couriers_router)
api_router.include_router(sessions_router)
api_router.include_router(realtime_router)

__all__ = ["api_router"]
