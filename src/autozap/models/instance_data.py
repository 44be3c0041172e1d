from pydantic import BaseModel, Field
from typing import Optional, Literal
from datetime import datetime

InstanceStatus = Literal["disconnected", "connecting", "connected", "verified", "error"]


class InstanceData(BaseModel):
    """
    A WhatsApp Business phone number connected through the Cloud API
    """
    id: Optional[str] = None  # MongoDB _id
    user_id: Optional[str] = None
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    phone_id: Optional[str] = Field(default=None, description="Cloud API phone number id")
    business_account_id: Optional[str] = None
    access_token: Optional[str] = None
    webhook_verify_token: Optional[str] = None
    status: InstanceStatus = "disconnected"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def can_send(self) -> bool:
        return bool(self.access_token and self.phone_id) and self.status in ("connected", "verified")
