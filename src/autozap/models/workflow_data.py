import json
from pydantic import BaseModel, Field, Discriminator, ConfigDict, AliasChoices, field_validator, model_validator
from typing import Optional, List, Dict, Any, Union, Literal, Annotated
from datetime import datetime

class NodePosition(BaseModel):
    x: float = 0
    y: float = 0

# Node payloads (the editor may send extra keys such as "label" or "imageFile")
class BaseNodeData(BaseModel):
    model_config = ConfigDict(extra='allow')

    label: str = ""

class TriggerNodeData(BaseNodeData):
    pass

class MessageNodeData(BaseNodeData):
    message: str = ""
    fileUrl: Optional[str] = None
    fileType: Optional[Literal["image", "video", "document"]] = None
    fileName: Optional[str] = None

class WaitNodeData(BaseNodeData):
    duration: int = Field(default=60, ge=0)
    unit: Literal["seconds", "minutes", "hours"] = "seconds"

class QuestionnaireOption(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: str
    label: str

class QuestionnaireNodeData(BaseNodeData):
    question: str = ""
    options: List[QuestionnaireOption] = []

class AINodeData(BaseNodeData):
    prompt: str = ""
    systemPrompt: Optional[str] = None
    temperature: float = 0.7
    maxTokens: int = 500

class ConditionNodeData(BaseNodeData):
    condition: str = ""
    trueLabel: Optional[str] = None
    falseLabel: Optional[str] = None

class ClosingNodeData(BaseNodeData):
    message: Optional[str] = None

# Base node with common fields
class BaseWorkflowNode(BaseModel):
    model_config = ConfigDict(extra='allow', populate_by_name=True)

    id: str
    type: str
    position: NodePosition = Field(default_factory=NodePosition)

    @model_validator(mode="before")
    @classmethod
    def _flatten_editor_payload(cls, values: Any) -> Any:
        # The editor persists positionX/positionY and data as a JSON string
        if not isinstance(values, dict):
            return values
        values = dict(values)
        if "position" not in values and ("positionX" in values or "positionY" in values):
            values["position"] = {"x": values.pop("positionX", 0), "y": values.pop("positionY", 0)}
        if isinstance(values.get("data"), str):
            try:
                values["data"] = json.loads(values["data"]) if values["data"] else {}
            except ValueError:
                raise ValueError(f"Node {values.get('id')} has invalid JSON data")
        return values

class TriggerNode(BaseWorkflowNode):
    type: Literal["trigger"]
    data: TriggerNodeData = Field(default_factory=TriggerNodeData)

class MessageNode(BaseWorkflowNode):
    type: Literal["message"]
    data: MessageNodeData = Field(default_factory=MessageNodeData)

class WaitNode(BaseWorkflowNode):
    type: Literal["wait"]
    data: WaitNodeData = Field(default_factory=WaitNodeData)

class QuestionnaireNode(BaseWorkflowNode):
    type: Literal["questionnaire"]
    data: QuestionnaireNodeData = Field(default_factory=QuestionnaireNodeData)

class AINode(BaseWorkflowNode):
    type: Literal["ai"]
    data: AINodeData = Field(default_factory=AINodeData)

class ConditionNode(BaseWorkflowNode):
    type: Literal["condition"]
    data: ConditionNodeData = Field(default_factory=ConditionNodeData)

class TransferToHumanNode(BaseWorkflowNode):
    type: Literal["transfer_to_human"]
    data: ClosingNodeData = Field(default_factory=ClosingNodeData)

class CloseChatNode(BaseWorkflowNode):
    type: Literal["close_chat"]
    data: ClosingNodeData = Field(default_factory=ClosingNodeData)

# Union of all node types with discriminator
WorkflowNode = Annotated[
    Union[
        TriggerNode,
        MessageNode,
        WaitNode,
        QuestionnaireNode,
        AINode,
        ConditionNode,
        TransferToHumanNode,
        CloseChatNode
    ],
    Discriminator("type")
]

class WorkflowEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    source: str = Field(..., validation_alias=AliasChoices("source", "sourceNodeId"))
    target: str = Field(..., validation_alias=AliasChoices("target", "targetNodeId"))
    sourceHandle: Optional[str] = None
    targetHandle: Optional[str] = None

    @model_validator(mode="after")
    def _default_id(self) -> "WorkflowEdge":
        if not self.id:
            self.id = f"{self.source}-{self.sourceHandle or 'out'}-{self.target}"
        return self

class WorkflowData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    user_id: Optional[str] = None
    instance_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("instance_id", "instanceId"))
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    trigger: str = Field(..., min_length=1, description="Keyword that starts the workflow when contained in a message")
    is_active: bool = Field(default=True, validation_alias=AliasChoices("is_active", "isActive"))
    is_ai_only: bool = Field(default=False, validation_alias=AliasChoices("is_ai_only", "isAIOnly"))
    uses_ai: bool = Field(default=False, validation_alias=AliasChoices("uses_ai", "usesAI"))
    ai_business_details: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ai_business_details", "aiBusinessDetails"),
        description="Serialized business profile used by AI-only workflows"
    )
    nodes: List[WorkflowNode] = []
    edges: List[WorkflowEdge] = Field(default=[], validation_alias=AliasChoices("edges", "connections"))
    created_at: Optional[datetime] = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = Field(default_factory=datetime.utcnow)

    @field_validator("trigger")
    @classmethod
    def _strip_trigger(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Trigger must not be blank")
        return value.strip()

    @field_validator("ai_business_details", mode="before")
    @classmethod
    def _serialize_business_details(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return json.dumps(value, ensure_ascii=False)
        return value

    def get_node(self, node_id: Optional[str]) -> Optional[BaseWorkflowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_trigger_node(self) -> Optional[BaseWorkflowNode]:
        for node in self.nodes:
            if node.type == "trigger":
                return node
        return None

    def business_details(self) -> Dict[str, Any]:
        if not self.ai_business_details:
            return {}
        try:
            details = json.loads(self.ai_business_details)
        except ValueError:
            return {}
        return details if isinstance(details, dict) else {}
