from fastapi import APIRouter

from esign.api.deps import Services

router = APIRouter()


@router.get("/rate-limit")
async def get_rate_limit(services: Services):
    """Signing provider cooldown state."""
    state = services.guard.status().to_dict()
    state["configured"] = services.client.is_configured
    return state
