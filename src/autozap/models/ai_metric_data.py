from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class AIMetricData(BaseModel):
    """
    Usage of one LLM or transcription call, recorded for the tenant's AI metrics
    """
    id: Optional[str] = None  # MongoDB _id
    user_id: Optional[str] = None
    instance_id: Optional[str] = None
    contact_number: Optional[str] = None
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    duration_ms: int = 0
    success: bool = True
    cached: bool = Field(default=False, description="Answered from the response cache without calling the API")
    created_at: datetime = Field(default_factory=datetime.utcnow)
