from fastapi import APIRouter
from esign.api.v2 import (
    documents,
    reminders,
    provider,
)

api_router = APIRouter()

# Include all v2 routers
api_router.include_router(documents.router, prefix="/documents", tags=["documents"])
api_router.include_router(reminders.router, prefix="/reminders", tags=["reminders"])
api_router.include_router(provider.router, prefix="/provider", tags=["provider"])
