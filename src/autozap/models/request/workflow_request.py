from pydantic import BaseModel, Field, ConfigDict, AliasChoices
from typing import Optional, List, Dict, Any


class WorkflowUpdateRequest(BaseModel):
    """
    Partial update of a workflow. Fields left out keep their stored value;
    nodes and edges, when given, replace the whole graph.
    """
    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "name": "Boas-vindas",
                "trigger": "oi",
                "isActive": True,
                "nodes": [
                    {"id": "t1", "type": "trigger", "position": {"x": 0, "y": 0}, "data": {"label": "Início"}},
                    {"id": "m1", "type": "message", "position": {"x": 0, "y": 120}, "data": {"message": "Olá {{nome}}!"}}
                ],
                "edges": [{"source": "t1", "target": "m1"}]
            }
        }
    )

    name: Optional[str] = None
    description: Optional[str] = None
    trigger: Optional[str] = None
    instance_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("instance_id", "instanceId"))
    is_active: Optional[bool] = Field(default=None, validation_alias=AliasChoices("is_active", "isActive"))
    is_ai_only: Optional[bool] = Field(default=None, validation_alias=AliasChoices("is_ai_only", "isAIOnly"))
    ai_business_details: Optional[Any] = Field(
        default=None, validation_alias=AliasChoices("ai_business_details", "aiBusinessDetails")
    )
    nodes: Optional[List[Dict[str, Any]]] = None
    edges: Optional[List[Dict[str, Any]]] = Field(default=None, validation_alias=AliasChoices("edges", "connections"))
