from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime


class MessageData(BaseModel):
    """
    A WhatsApp message stored for the chat inbox and AI history.
    Outbound messages have is_from_me=True and the contact in to_number.
    """
    id: Optional[str] = None  # MongoDB _id
    instance_id: str
    from_number: str = Field(..., description="Sender phone number (or phone id for outbound messages)")
    to_number: str = Field(..., description="Recipient phone number")
    body: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    is_from_me: bool = False
    message_type: str = Field(default="text", description="text, button, interactive, image, video, document, ...")
    interactive_data: Optional[Dict[str, Any]] = None
    message_id: Optional[str] = Field(default=None, description="WhatsApp message id (wamid)")
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def contact_number(self) -> str:
        return self.to_number if self.is_from_me else self.from_number


class IncomingMessage(BaseModel):
    """
    Inbound message normalized from the WhatsApp Cloud API webhook payload
    """
    instance_id: str
    from_number: str
    to_number: str
    body: str = ""
    message_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    type: str = "text"
    contact_name: Optional[str] = None
    media_url: Optional[str] = None
    interactive_data: Optional[Dict[str, Any]] = None
