from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, Literal
from datetime import datetime

ExecutionStatus = Literal["running", "waiting_reply", "waiting_timer"]


class WorkflowExecution(BaseModel):
    """
    Interpreter state of one workflow run for one contact on one instance.
    At most one execution exists per (instance_id, contact_number).
    """
    id: Optional[str] = None  # MongoDB _id
    instance_id: str = Field(..., description="WhatsApp instance receiving the conversation")
    contact_number: str = Field(..., description="Contact phone number as received from WhatsApp")
    workflow_id: str = Field(..., description="Workflow being executed")
    current_node_id: str = Field(..., description="Node the execution is positioned at")
    user_response: Optional[str] = Field(default=None, description="Last reply given by the contact")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Variables available to {{name}} placeholders")
    status: ExecutionStatus = "running"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def execution_key(self) -> str:
        return f"{self.instance_id}-{self.contact_number}"
