from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


MessageRole = Literal["system", "user", "assistant", "tool"]
WorkflowStatus = Literal["pending", "running", "completed", "failed", "paused"]
StepStatus = Literal["pending", "running", "completed", "failed"]


class Agent(BaseModel):
    id: str
    name: str
    description: str = ""
    model: str
    temperature: float = 0.7
    max_tokens: int = 1024
    system_prompt: Optional[str] = None
    persona_id: Optional[str] = None
    tools: List[str] = Field(default_factory=list)

    model_config = {"protected_namespaces": (), "frozen": True}


class AgentCreateRequest(BaseModel):
    id: Optional[str] = None
    name: str
    description: str = ""
    model: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, gt=0)
    system_prompt: Optional[str] = None
    persona_id: Optional[str] = None
    tools: List[str] = Field(default_factory=list)


class Persona(BaseModel):
    id: str
    name: str
    description: str = ""
    traits: Dict[str, Any] = Field(default_factory=dict)
    system_prompt_template: Optional[str] = None
    model_settings: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"protected_namespaces": ()}


class RunRequest(BaseModel):
    input: str = ""
    thread_id: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    system_prompt_override: Optional[str] = None
    tool_choice: Optional[Any] = None
    stream: bool = False
    persona_id: Optional[str] = None
    auto_persona: bool = False


class ThreadCreateRequest(BaseModel):
    name: str = "New thread"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MessageAppendRequest(BaseModel):
    role: MessageRole
    content: str
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RecommendRequest(BaseModel):
    context: str


class FeedbackRequest(BaseModel):
    # Bounds are enforced by the scorer so the API and library reject the same values.
    rating: Any
    comment: Optional[str] = None


class WorkflowStepRequest(BaseModel):
    agent_id: str
    input: Optional[str] = None
    thread_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WorkflowCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    steps: List[WorkflowStepRequest] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WorkflowExecuteRequest(BaseModel):
    chain_output: bool = True


class ToolExecuteRequest(BaseModel):
    arguments: Dict[str, Any] = Field(default_factory=dict)
