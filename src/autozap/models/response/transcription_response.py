from pydantic import BaseModel


class TranscriptionResponse(BaseModel):
    text: str
    whisperCost: float
    whisperTokens: int

    class Config:
        json_schema_extra = {
            "example": {
                "text": "Gastei cinquenta reais no mercado",
                "whisperCost": 0.006,
                "whisperTokens": 8
            }
        }
