from fastapi import APIRouter, Request
from fastapi.exceptions import HTTPException
from fastapi.responses import PlainTextResponse, JSONResponse
from typing import Optional

# Utils
from autozap.utils.log_utils import LogUtil

# Database
from autozap.database.app_db import AppDB

# Services
from autozap.services.message_ingestion_service import MessageIngestionService
from autozap.services.whatsapp_cloud_service import WhatsAppCloudService

# Exceptions
from autozap.exceptions.app_exception import AppException


def create_whatsapp_webhook_api(
    log_util: LogUtil,
    app_db: AppDB,
    message_ingestion_service: MessageIngestionService
) -> APIRouter:
    """
    Create API router for the WhatsApp Cloud API webhook (verification handshake and notifications).
    """
    router = APIRouter(
        prefix="/api/whatsapp",
        tags=["whatsapp-webhook"],
    )

    @router.get("/webhook")
    async def verify_webhook(request: Request):
        params = request.query_params
        instance_id: Optional[str] = params.get("instanceId")
        mode = params.get("hub.mode")
        token = params.get("hub.verify_token")
        challenge = params.get("hub.challenge") or ""

        if not instance_id:
            raise HTTPException(status_code=400, detail="instanceId is required")

        instance = await app_db.get_instance(instance_id)
        if instance is None:
            raise HTTPException(status_code=404, detail="Instance not found")

        if WhatsAppCloudService.verify_webhook(mode, token, instance.webhook_verify_token):
            log_util.info(service_name="WhatsAppWebhookAPI", message=f"Webhook verified for instance {instance_id}")
            return PlainTextResponse(content=challenge, status_code=200)

        log_util.warning(service_name="WhatsAppWebhookAPI", message=f"Invalid webhook token for instance {instance_id}")
        raise HTTPException(status_code=403, detail="Invalid verify token")

    @router.post("/webhook")
    async def receive_webhook(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            log_util.warning(service_name="WhatsAppWebhookAPI", message="Webhook body is not valid JSON")
            return JSONResponse(status_code=400, content={"error": "Invalid JSON payload"})

        try:
            result = await message_ingestion_service.process_webhook(payload)
            return {"success": result.get("success", True)}
        except AppException as e:
            log_util.error(service_name="WhatsAppWebhookAPI", message=f"Error processing webhook: {e}")
            return JSONResponse(status_code=e.status_code, content={"error": e.message})
        except Exception as e:
            log_util.error(service_name="WhatsAppWebhookAPI", message=f"Error processing webhook: {e}")
            return JSONResponse(status_code=500, content={"error": "Error processing webhook"})

    return router
