"""
FastAPI Dependencies

Provides dependency injection for database sessions and the process-wide
signing services built in the application lifespan.
"""

from typing import Annotated
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from esign.database import get_db
from esign.services.container import ESignServices


def get_services(request: Request) -> ESignServices:
    """Services attached to the app at startup."""
    return request.app.state.services


# Type aliases for dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
Services = Annotated[ESignServices, Depends(get_services)]
