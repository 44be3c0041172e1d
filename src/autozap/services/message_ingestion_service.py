"""
Message Ingestion Service
Turns WhatsApp Cloud API webhook notifications into stored messages and
hands them to the workflow executor.
"""
from datetime import datetime
from typing import Optional, Dict, Any, List

# Utils
from autozap.utils.log_utils import LogUtil

# Database
from autozap.database.app_db import AppDB

# Services
from autozap.services.conversation_status_service import ConversationStatusService
from autozap.services.workflow_executor_service import WorkflowExecutorService

# Exceptions
from autozap.exceptions.app_exception import ValidationException

# Models
from autozap.models.message_data import MessageData, IncomingMessage


class MessageIngestionService:
    def __init__(
        self,
        log_util: LogUtil,
        app_db: AppDB,
        conversation_status_service: ConversationStatusService,
        workflow_executor_service: WorkflowExecutorService
    ):
        self.log_util = log_util
        self.app_db = app_db
        self.conversation_status_service = conversation_status_service
        self.workflow_executor_service = workflow_executor_service

    @staticmethod
    def extract_value(payload: Any) -> Optional[Dict[str, Any]]:
        """
        The Cloud API nests everything under entry[0].changes[0].value
        """
        if not isinstance(payload, dict):
            raise ValidationException("Webhook payload must be a JSON object")
        try:
            value = payload.get("entry", [])[0].get("changes", [])[0].get("value")
        except (IndexError, AttributeError, TypeError):
            return None
        return value if isinstance(value, dict) else None

    @staticmethod
    def parse_message(raw_message: Dict[str, Any], value: Dict[str, Any], instance_id: str) -> IncomingMessage:
        """
        Normalize one entry of value.messages.
        Button replies carry the button id as body so questionnaires can match it.
        """
        message_type = raw_message.get("type") or "text"
        body = (raw_message.get("text") or {}).get("body") or ""
        interactive_data = None

        interactive = raw_message.get("interactive") or {}
        if message_type == "interactive" and interactive.get("type") in ("button_reply", "list_reply"):
            reply = interactive.get(interactive["type"]) or {}
            body = reply.get("id") or ""
            message_type = "button"
            interactive_data = {"buttonId": reply.get("id"), "buttonTitle": reply.get("title")}
        elif message_type == "button":
            # Quick reply on a template message
            button = raw_message.get("button") or {}
            body = button.get("payload") or button.get("text") or ""
            interactive_data = {"buttonId": button.get("payload"), "buttonTitle": button.get("text")}
        elif message_type in ("image", "video", "document", "audio"):
            body = (raw_message.get(message_type) or {}).get("caption") or ""

        contacts = value.get("contacts") or []
        contact_name = ((contacts[0] if contacts else {}).get("profile") or {}).get("name")

        try:
            timestamp = datetime.utcfromtimestamp(int(raw_message.get("timestamp")))
        except (TypeError, ValueError):
            timestamp = datetime.utcnow()

        return IncomingMessage(
            instance_id=instance_id,
            from_number=raw_message.get("from") or "",
            to_number=(value.get("metadata") or {}).get("display_phone_number") or "",
            body=body,
            message_id=raw_message.get("id"),
            timestamp=timestamp,
            type=message_type,
            contact_name=contact_name,
            interactive_data=interactive_data
        )

    async def process_webhook(self, payload: Any) -> Dict[str, Any]:
        """
        Process a webhook notification.

        Status notifications (delivered, read) and payloads without messages are
        acknowledged without side effects.

        Returns:
            Dict with success flag and the number of messages processed
        """
        value = self.extract_value(payload)
        if value is None:
            self.log_util.info(service_name="MessageIngestionService", message="Webhook without value, ignoring")
            return {"success": True, "processed": 0}

        messages: List[Dict[str, Any]] = value.get("messages") or []
        if not messages:
            statuses = value.get("statuses") or []
            if statuses:
                self.log_util.debug(
                    service_name="MessageIngestionService",
                    message=f"Received {len(statuses)} status notification(s)"
                )
            return {"success": True, "processed": 0}

        phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
        if not phone_number_id:
            self.log_util.warning(service_name="MessageIngestionService", message="Webhook without phone_number_id")
            return {"success": True, "processed": 0}

        instance = await self.app_db.get_instance_by_phone_id(phone_number_id)
        if instance is None:
            self.log_util.warning(
                service_name="MessageIngestionService",
                message=f"No instance found for phone_number_id {phone_number_id}"
            )
            return {"success": True, "processed": 0}

        processed = 0
        for raw_message in messages:
            incoming = self.parse_message(raw_message, value, instance.id)
            await self.process_incoming_message(incoming)
            processed += 1

        return {"success": True, "processed": processed}

    async def process_incoming_message(self, message: IncomingMessage) -> Dict[str, Any]:
        """
        Store an inbound message and run workflows unless the conversation is closed.
        """
        instance_id = message.instance_id
        contact_number = message.from_number

        if message.contact_name:
            await self.app_db.upsert_contact_name(instance_id, contact_number, message.contact_name)

        await self.conversation_status_service.ensure_status(instance_id, contact_number)

        await self.app_db.save_message(MessageData(
            instance_id=instance_id,
            from_number=contact_number,
            to_number=message.to_number,
            body=message.body,
            timestamp=message.timestamp,
            is_from_me=False,
            message_type=message.type,
            interactive_data=message.interactive_data,
            message_id=message.message_id
        ))

        status = await self.conversation_status_service.get_status(instance_id, contact_number)
        if status == "closed":
            self.log_util.info(
                service_name="MessageIngestionService",
                message=f"Conversation {instance_id}-{contact_number} is closed, skipping workflows"
            )
            return {"status": "closed"}

        try:
            return await self.workflow_executor_service.execute_workflows(instance_id, message)
        except Exception as e:
            self.log_util.error(
                service_name="MessageIngestionService",
                message=f"Error executing workflows for {contact_number} on instance {instance_id}: {str(e)}"
            )
            return {"status": "error", "message": str(e)}
