from typing import Optional, List, Dict, Any

# Utils
from autozap.utils.log_utils import LogUtil

# Database
from autozap.database.app_db import AppDB

# Services
from autozap.services.conversation_status_service import ConversationStatusService, DEFAULT_STATUS
from autozap.services.whatsapp_cloud_service import WhatsAppCloudService

# Models
from autozap.models.message_data import MessageData
from autozap.models.instance_data import InstanceData
from autozap.models.response.chat_response import ConversationSummary

# Exceptions
from autozap.exceptions.app_exception import NotFoundException


class ChatService:
    """
    Chat inbox: conversations grouped per instance and contact, their messages,
    manual replies and status changes.
    """

    def __init__(
        self,
        log_util: LogUtil,
        app_db: AppDB,
        conversation_status_service: ConversationStatusService,
        whatsapp_cloud_service: WhatsAppCloudService
    ):
        self.log_util = log_util
        self.app_db = app_db
        self.conversation_status_service = conversation_status_service
        self.whatsapp_cloud_service = whatsapp_cloud_service

    async def _get_owned_instance(self, user_id: str, instance_id: str) -> InstanceData:
        instance = await self.app_db.get_instance(instance_id)
        if instance is None or instance.user_id != user_id:
            raise NotFoundException("WhatsApp instance")
        return instance

    @staticmethod
    def group_conversations(
        messages: List[MessageData],
        instance_names: Dict[str, str],
        statuses: Dict[str, str],
        contact_names: Dict[str, str],
        status_filter: Optional[str] = None
    ) -> List[ConversationSummary]:
        """
        Group messages (most recent first) into one summary per instance and contact.
        The unread count is the number of inbound messages of the conversation.
        """
        conversations: Dict[str, ConversationSummary] = {}
        for message in messages:
            key = f"{message.instance_id}-{message.contact_number}"
            summary = conversations.get(key)
            if summary is None:
                summary = ConversationSummary(
                    instance_id=message.instance_id,
                    instance_name=instance_names.get(message.instance_id),
                    contact_number=message.contact_number,
                    contact_name=contact_names.get(key),
                    last_message=message.body,
                    last_message_time=message.timestamp,
                    status=statuses.get(key, DEFAULT_STATUS)
                )
                conversations[key] = summary
            elif message.timestamp > summary.last_message_time:
                summary.last_message = message.body
                summary.last_message_time = message.timestamp
            if not message.is_from_me:
                summary.unread_count += 1

        result = list(conversations.values())
        if status_filter:
            result = [conversation for conversation in result if conversation.status == status_filter]
        result.sort(key=lambda conversation: conversation.last_message_time, reverse=True)
        return result

    async def get_conversations(self, user_id: str, status: Optional[str] = None) -> List[ConversationSummary]:
        instances = await self.app_db.get_instances(user_id)
        if not instances:
            return []
        instance_ids = [instance.id for instance in instances]
        instance_names = {instance.id: instance.name for instance in instances}

        messages = await self.app_db.get_messages_for_instances(instance_ids)
        statuses = {
            f"{row.instance_id}-{row.contact_number}": row.status
            for row in await self.conversation_status_service.get_statuses(instance_ids)
        }
        contact_names = await self.app_db.get_contact_names(instance_ids)
        return self.group_conversations(messages, instance_names, statuses, contact_names, status)

    async def get_messages(self, user_id: str, instance_id: str, contact_number: str) -> List[MessageData]:
        await self._get_owned_instance(user_id, instance_id)
        return await self.app_db.get_conversation_messages(instance_id, contact_number)

    async def send_message(self, user_id: str, instance_id: str, to: str, message: str) -> Dict[str, Any]:
        await self._get_owned_instance(user_id, instance_id)
        message_id = await self.whatsapp_cloud_service.send_text(instance_id, to, message)
        self.log_util.info(service_name="ChatService", message=f"Manual message sent to {to} on instance {instance_id}")
        return {"success": True, "message_id": message_id}

    async def update_status(self, user_id: str, instance_id: str, contact_number: str, status: str) -> Dict[str, Any]:
        await self._get_owned_instance(user_id, instance_id)
        updated = await self.conversation_status_service.update_status(instance_id, contact_number, status)
        return {"success": True, "status": updated.status if updated else status}
