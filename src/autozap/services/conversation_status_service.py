from typing import Optional, List

# Utils
from autozap.utils.log_utils import LogUtil

# Database
from autozap.database.app_db import AppDB

# Models
from autozap.models.conversation_status_data import ConversationStatusData, PENDING_APPOINTMENT_PREFIX

DEFAULT_STATUS = "active"


class ConversationStatusService:
    """
    Per-contact conversation status (active, waiting_human, closed).

    A status holding a pending_appointment: marker is owned by the scheduling
    flow and is never overwritten from here.
    """

    def __init__(self, log_util: LogUtil, app_db: AppDB):
        self.log_util = log_util
        self.app_db = app_db

    async def update_status(self, instance_id: str, contact_number: str, status: str) -> Optional[ConversationStatusData]:
        current = await self.app_db.get_conversation_status(instance_id, contact_number)
        if current is not None and current.is_pending_appointment:
            self.log_util.info(
                service_name="ConversationStatusService",
                message=f"Keeping pending appointment marker for {contact_number} on instance {instance_id}, ignoring status {status}"
            )
            return current
        updated = await self.app_db.set_conversation_status(instance_id, contact_number, status)
        self.log_util.info(
            service_name="ConversationStatusService",
            message=f"Conversation {instance_id}-{contact_number} set to {status}"
        )
        return updated

    async def get_status(self, instance_id: str, contact_number: str) -> str:
        current = await self.app_db.get_conversation_status(instance_id, contact_number)
        return current.status if current is not None else DEFAULT_STATUS

    async def ensure_status(self, instance_id: str, contact_number: str) -> ConversationStatusData:
        return await self.app_db.create_conversation_status_if_missing(instance_id, contact_number, DEFAULT_STATUS)

    async def get_statuses(self, instance_ids: List[str]) -> List[ConversationStatusData]:
        return await self.app_db.get_conversation_statuses(instance_ids)

    @staticmethod
    def is_pending_appointment(status: Optional[str]) -> bool:
        return bool(status) and status.startswith(PENDING_APPOINTMENT_PREFIX)
