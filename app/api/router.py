"""API router configuration.

This module configures the main API router and includes all endpoint routers
for different features of the application.
"""

from fastapi import APIRouter

from app.api.endpoints import chat, health, notifications, offers, presence, realtime

api_router = APIRouter()

# Include all API routers
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(chat.router, prefix="/chat", tags=["chat"])
api_router.include_router(offers.router, prefix="/offers", tags=["offers"])
api_router.include_router(presence.router, prefix="/presence", tags=["presence"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
api_router.include_router(realtime.router, prefix="/ws", tags=["realtime"])
