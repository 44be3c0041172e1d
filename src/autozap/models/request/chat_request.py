from pydantic import BaseModel, Field, ConfigDict, AliasChoices


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instance_id: str = Field(..., validation_alias=AliasChoices("instance_id", "instanceId"))
    to: str = Field(..., min_length=1, description="Contact phone number")
    message: str = Field(..., min_length=1)


class ConversationStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instance_id: str = Field(..., validation_alias=AliasChoices("instance_id", "instanceId"))
    contact_number: str = Field(..., validation_alias=AliasChoices("contact_number", "contactNumber"))
    status: str = Field(..., pattern=r"^(active|waiting_human|closed)$")
