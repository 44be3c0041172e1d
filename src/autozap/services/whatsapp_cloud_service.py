"""
WhatsApp Cloud API client.
Sends text, interactive buttons and media for an instance and stores every
sent message so the chat inbox and AI history include the outbound side.
"""
from typing import Optional, Dict, Any, List
from datetime import datetime
import httpx

# Utils
from autozap.utils.log_utils import LogUtil
from autozap.utils.environment_utils import EnvironmentUtils
from autozap.utils.template_utils import normalize_whatsapp_number

# Database
from autozap.database.app_db import AppDB

# Exceptions
from autozap.exceptions.app_exception import NotFoundException, ValidationException, ExternalServiceException

# Models
from autozap.models.instance_data import InstanceData
from autozap.models.message_data import MessageData

MAX_BUTTONS = 3


class WhatsAppCloudService:
    def __init__(
        self,
        log_util: LogUtil,
        environment_utils: EnvironmentUtils,
        app_db: AppDB,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.log_util = log_util
        self.app_db = app_db
        self.api_url = str(environment_utils.get_env_variable("WHATSAPP_API_URL")).rstrip("/")
        # Injected in tests (httpx.MockTransport); None uses the default network transport
        self.transport = transport

    @staticmethod
    def verify_webhook(mode: Optional[str], token: Optional[str], expected_token: Optional[str]) -> bool:
        return mode == "subscribe" and bool(expected_token) and token == expected_token

    async def _get_sendable_instance(self, instance_id: str) -> InstanceData:
        instance = await self.app_db.get_instance(instance_id)
        if instance is None:
            raise NotFoundException("WhatsApp instance")
        if not instance.access_token or not instance.phone_id:
            raise ValidationException("WhatsApp instance is not configured (missing access token or phone id)")
        if instance.status not in ("connected", "verified"):
            raise ValidationException(f"WhatsApp instance is not connected (status: {instance.status})")
        return instance

    async def _post_message(self, instance: InstanceData, payload: Dict[str, Any]) -> Optional[str]:
        """
        POST a message payload to the Cloud API.

        Returns:
            The WhatsApp message id (wamid) when the API returns one
        """
        url = f"{self.api_url}/{instance.phone_id}/messages"
        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self.transport) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={
                        "Content-Type": "application/json",
                        "Authorization": f"Bearer {instance.access_token}"
                    }
                )
        except httpx.HTTPError as e:
            self.log_util.error(
                service_name="WhatsAppCloudService",
                message=f"Error calling WhatsApp Cloud API for instance {instance.id}: {str(e)}"
            )
            raise ExternalServiceException(service="WhatsApp Cloud API", message=str(e))

        if response.status_code >= 300:
            try:
                error_message = response.json().get("error", {}).get("message") or response.text
            except ValueError:
                error_message = response.text
            self.log_util.error(
                service_name="WhatsAppCloudService",
                message=f"WhatsApp Cloud API returned {response.status_code} for instance {instance.id}: {error_message}"
            )
            raise ExternalServiceException(service="WhatsApp Cloud API", message=error_message or "Unknown error")

        try:
            messages = response.json().get("messages") or []
        except ValueError:
            messages = []
        return messages[0].get("id") if messages else None

    async def _store_sent_message(
        self,
        instance: InstanceData,
        to: str,
        body: str,
        message_type: str,
        message_id: Optional[str],
        interactive_data: Optional[Dict[str, Any]] = None
    ) -> None:
        try:
            await self.app_db.save_message(MessageData(
                instance_id=instance.id,
                from_number=instance.phone or instance.phone_id or "",
                to_number=to,
                body=body,
                timestamp=datetime.utcnow(),
                is_from_me=True,
                message_type=message_type,
                interactive_data=interactive_data,
                message_id=message_id or f"sent_{int(datetime.utcnow().timestamp() * 1000)}"
            ))
        except Exception as e:
            # The message already left; a storage failure must not turn the send into an error
            self.log_util.error(
                service_name="WhatsAppCloudService",
                message=f"Error saving sent message to {to} on instance {instance.id}: {str(e)}"
            )

    def _base_payload(self, to: str, message_type: str) -> Dict[str, Any]:
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": message_type
        }

    async def send_text(self, instance_id: str, to: str, message: str) -> Optional[str]:
        instance = await self._get_sendable_instance(instance_id)
        formatted_phone = normalize_whatsapp_number(to)
        payload = self._base_payload(formatted_phone, "text")
        payload["text"] = {"preview_url": False, "body": message}

        message_id = await self._post_message(instance, payload)
        self.log_util.info(
            service_name="WhatsAppCloudService",
            message=f"Text message sent to {formatted_phone} from instance {instance_id}"
        )
        await self._store_sent_message(instance, formatted_phone, message, "text", message_id)
        return message_id

    async def send_interactive_buttons(
        self,
        instance_id: str,
        to: str,
        message: str,
        buttons: List[Dict[str, str]]
    ) -> Optional[str]:
        """
        Send a message with reply buttons.

        Args:
            buttons: [{"id": ..., "title": ...}], only the first three are sent
        """
        instance = await self._get_sendable_instance(instance_id)
        formatted_phone = normalize_whatsapp_number(to)
        limited_buttons = buttons[:MAX_BUTTONS]

        payload = self._base_payload(formatted_phone, "interactive")
        payload["interactive"] = {
            "type": "button",
            "body": {"text": message},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": button["id"], "title": button["title"]}}
                    for button in limited_buttons
                ]
            }
        }

        message_id = await self._post_message(instance, payload)
        self.log_util.info(
            service_name="WhatsAppCloudService",
            message=f"Interactive message with {len(limited_buttons)} button(s) sent to {formatted_phone}"
        )
        await self._store_sent_message(
            instance,
            formatted_phone,
            message,
            "interactive",
            message_id,
            interactive_data={"buttons": [{"id": b["id"], "title": b["title"]} for b in limited_buttons]}
        )
        return message_id

    async def _send_media(
        self,
        instance_id: str,
        to: str,
        media_type: str,
        media_url: str,
        caption: Optional[str],
        placeholder: str,
        filename: Optional[str] = None
    ) -> Optional[str]:
        instance = await self._get_sendable_instance(instance_id)
        formatted_phone = normalize_whatsapp_number(to)
        media: Dict[str, Any] = {"link": media_url, "caption": caption or ""}
        if filename:
            media["filename"] = filename

        payload = self._base_payload(formatted_phone, media_type)
        payload[media_type] = media

        message_id = await self._post_message(instance, payload)
        self.log_util.info(
            service_name="WhatsAppCloudService",
            message=f"{media_type.capitalize()} sent to {formatted_phone} from instance {instance_id}"
        )
        await self._store_sent_message(
            instance,
            formatted_phone,
            caption or placeholder,
            media_type,
            message_id,
            interactive_data={"mediaUrl": media_url, "fileName": filename} if filename else {"mediaUrl": media_url}
        )
        return message_id

    async def send_image(self, instance_id: str, to: str, image_url: str, caption: Optional[str] = None) -> Optional[str]:
        return await self._send_media(instance_id, to, "image", image_url, caption, "[Imagem]")

    async def send_video(self, instance_id: str, to: str, video_url: str, caption: Optional[str] = None) -> Optional[str]:
        return await self._send_media(instance_id, to, "video", video_url, caption, "[Vídeo]")

    async def send_document(
        self,
        instance_id: str,
        to: str,
        document_url: str,
        filename: str,
        caption: Optional[str] = None
    ) -> Optional[str]:
        return await self._send_media(
            instance_id, to, "document", document_url, caption, f"[Documento: {filename}]", filename=filename
        )

