"""
V1 API router aggregator: wires all endpoint modules together.
"""

from fastapi import APIRouter

from app.api.v1.endpoints import attendance, auth, health, locations, settings

api_router = APIRouter()

# Auth (login, refresh, profile)
api_router.include_router(auth.router)

# Check-in / check-out, admin sweep & overrides, event queries
api_router.include_router(attendance.router)

# Location QR codes
api_router.include_router(locations.router)

# Organization settings
api_router.include_router(settings.router)

# Health
api_router.include_router(health.router)
