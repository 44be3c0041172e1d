from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class WorkflowWait(BaseModel):
    """
    Model for storing a paused execution on a wait node.
    Used by the wait scheduler to resume the execution once resume_at has passed.
    """
    id: Optional[str] = None  # MongoDB _id
    instance_id: str = Field(..., description="WhatsApp instance of the paused execution")
    contact_number: str = Field(..., description="Contact of the paused execution")
    workflow_id: str = Field(..., description="Workflow where the wait node exists")
    node_id: str = Field(..., description="Wait node ID")
    duration: int = Field(..., description="Wait duration value")
    unit: str = Field(..., description="Wait unit (seconds, minutes, hours)")
    wait_seconds: int = Field(..., description="Total wait time in seconds")
    started_at: datetime = Field(default_factory=datetime.utcnow, description="When the wait started")
    resume_at: datetime = Field(..., description="When the execution should resume (started_at + wait_seconds)")
    processed: bool = Field(default=False, description="Whether the execution has been resumed")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
