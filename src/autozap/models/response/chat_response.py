from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class ConversationSummary(BaseModel):
    """
    One row of the chat inbox: a contact on one of the tenant's instances
    """
    instance_id: str
    instance_name: Optional[str] = None
    contact_number: str
    contact_name: Optional[str] = None
    last_message: str
    last_message_time: datetime
    unread_count: int = 0
    status: str = "active"
