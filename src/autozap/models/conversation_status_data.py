from pydantic import BaseModel, Field
from typing import Optional, Literal
from datetime import datetime

ConversationStatusType = Literal["active", "waiting_human", "closed"]

PENDING_APPOINTMENT_PREFIX = "pending_appointment:"


class ConversationStatusData(BaseModel):
    id: Optional[str] = None  # MongoDB _id
    instance_id: str
    contact_number: str
    status: str = Field(default="active", description="active, waiting_human, closed or a pending_appointment: marker")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_pending_appointment(self) -> bool:
        return self.status.startswith(PENDING_APPOINTMENT_PREFIX)
