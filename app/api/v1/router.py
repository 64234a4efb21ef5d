from fastapi import APIRouter

from app.api.v1.endpoints import returns


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Returns & Refunds ====================
api_router.include_router(
    returns.router,
    tags=["Returns & Refunds"]
)
