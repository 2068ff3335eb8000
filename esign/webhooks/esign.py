from fastapi import APIRouter, Request
import logging

logger = logging.getLogger(__name__)

esign_webhook_router = APIRouter()


@esign_webhook_router.post("")
async def handle_esign_webhook(request: Request):
    """
    Handle signing provider event notifications.

    Always answers 200 so the provider does not keep retrying; failures are
    logged and reported in the body.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Webhook body is not valid JSON")
        return {"success": False, "message": "Webhook received with errors"}

    if not isinstance(payload, dict):
        logger.warning("Webhook body is not a JSON object")
        return {"success": False, "message": "Webhook received with errors"}

    try:
        result = await request.app.state.services.webhooks.handle(payload)
    except Exception as e:
        logger.error(f"Error handling signing provider webhook: {type(e).__name__}: {e}", exc_info=True)
        return {"success": False, "message": "Webhook received with errors"}

    return {"success": True, "message": "Webhook received successfully", "data": result.to_dict()}
