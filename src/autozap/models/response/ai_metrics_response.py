from pydantic import BaseModel


class AIMetricsSummary(BaseModel):
    total_calls: int = 0
    failed_calls: int = 0
    cached_calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    average_duration_ms: float = 0.0
