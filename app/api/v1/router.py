"""
API v1 router — aggregates all endpoint sub-routers.
"""
from fastapi import APIRouter

from app.api.v1.endpoints import payment, subscription

api_router = APIRouter()

api_router.include_router(payment.router)
api_router.include_router(subscription.router)
