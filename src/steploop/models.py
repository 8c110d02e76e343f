# models.py
# Data contracts for the step loop engine.
# No business logic lives here: pure schema and validation.

from datetime import datetime
from enum import Enum
from typing import Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field, SecretStr


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Action(BaseModel):
    """A request to invoke one named tool."""

    tool: str = Field(..., description="Tool name, resolved against the agent's active tool set.")
    arguments: dict[str, Any] = Field(default_factory=dict)
    call_id: str | None = Field(default=None, description="Provider call id, echoed back with the observation.")
    parse_error: str | None = Field(
        default=None,
        description="Set when the provider sent arguments that are not a JSON object.",
    )


class Message(BaseModel):
    """One entry of a run's append-only transcript."""

    role: Role
    content: str = ""
    action: Action | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None


class ObservationKind(str, Enum):
    OK = "ok"
    INVALID_ARGUMENTS = "invalid_arguments"
    TOOL_TIMEOUT = "tool_timeout"
    TOOL_UNAVAILABLE = "tool_unavailable"
    TOOL_ERROR = "tool_error"
    UNKNOWN_TOOL = "unknown_tool"


class Observation(BaseModel):
    tool: str
    kind: ObservationKind = ObservationKind.OK
    content: str = ""

    @property
    def is_error(self) -> bool:
        return self.kind is not ObservationKind.OK


# ---------------------------------------------------------------------------
# Tool descriptors
# ---------------------------------------------------------------------------

ParamType = Literal["string", "integer", "number", "boolean", "object", "array", "any"]


class ParamSpec(BaseModel):
    name: str
    type: ParamType = "string"
    description: str = ""
    required: bool = True


class ToolDescriptor(BaseModel):
    """Metadata injected into prompts and provider tool catalogs."""

    name: str = Field(..., description="Unique within one agent's active tool set.")
    description: str = ""
    params: list[ParamSpec] = Field(default_factory=list)

    def json_schema(self) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        for param in self.params:
            prop: dict[str, Any] = {"description": param.description}
            if param.type != "any":
                prop["type"] = param.type
            properties[param.name] = prop
        return {
            "type": "object",
            "properties": properties,
            "required": [p.name for p in self.params if p.required],
        }

    @classmethod
    def from_json_schema(cls, name: str, description: str, schema: dict[str, Any] | None) -> "ToolDescriptor":
        schema = schema or {}
        required = set(schema.get("required", []))
        params = []
        for param_name, prop in (schema.get("properties") or {}).items():
            raw_type = prop.get("type", "any")
            if isinstance(raw_type, list):
                raw_type = next((t for t in raw_type if t != "null"), "any")
            if raw_type not in get_args(ParamType):
                raw_type = "any"
            params.append(
                ParamSpec(
                    name=param_name,
                    type=raw_type,
                    description=prop.get("description", ""),
                    required=param_name in required,
                )
            )
        return cls(name=name, description=description or "", params=params)


# ---------------------------------------------------------------------------
# Model responses
# ---------------------------------------------------------------------------


class RawCompletion(BaseModel):
    """What a dialect returns before the action grammar interprets it."""

    text: str = ""
    actions: list[Action] = Field(default_factory=list)


class FinalText(BaseModel):
    kind: Literal["final_text"] = "final_text"
    text: str
    malformed: bool = Field(default=False, description="Output matched neither plain text nor an action.")


class ActionRequest(BaseModel):
    kind: Literal["action"] = "action"
    action: Action
    text: str = Field(default="", description="Commentary that accompanied the action.")


class PartialChunk(BaseModel):
    kind: Literal["chunk"] = "chunk"
    text: str


class ResponseEnd(BaseModel):
    """Explicit end-of-response marker closing a stream of PartialChunks."""

    kind: Literal["end"] = "end"
    response: FinalText | ActionRequest


ModelResponse = FinalText | ActionRequest


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class StepTiming(BaseModel):
    started_at: datetime
    duration: float = Field(..., description="Seconds spent in the step.")


class StepRecord(BaseModel):
    """Immutable log entry produced after each step."""

    index: int = Field(..., ge=0)
    thought: str = Field(default="", description="Text the model produced alongside its action.")
    action: Action | None = None
    observation: Observation | None = None
    final_answer: str | None = None
    plan: str | None = Field(default=None, description="Plan injected before this step, if any.")
    warning: str | None = None
    timing: StepTiming


class TerminationReason(str, Enum):
    SUCCESS = "success"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"
    FATAL_ERROR = "fatal_error"
    CANCELLED = "cancelled"


class RunResult(BaseModel):
    agent: str
    task: str
    final_answer: str | None = None
    reason: TerminationReason
    error_kind: str | None = Field(default=None, description="Exception class name on fatal termination.")
    error: str | None = None
    steps: list[StepRecord] = Field(default_factory=list)
    transcript: list[Message] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class Dialect(str, Enum):
    OPENAI = "openai"
    GEMINI = "gemini"
    TEXT = "text"


class AgentVariant(str, Enum):
    TOOL_CALLING = "tool_calling"
    CODE = "code"
    PLANNING = "planning"
    DELEGATING = "delegating"


class AgentConfig(BaseModel):
    """Immutable for the lifetime of one run."""

    model_config = ConfigDict(frozen=True)

    name: str = "agent"
    description: str = "A multi-step agent that can solve tasks using a series of tools."
    model: str = "gpt-4.1-mini"
    base_url: str | None = None
    api_key: SecretStr | None = None
    tool_credentials: dict[str, SecretStr] = Field(default_factory=dict, description="API keys of keyed built-in tools, by tool name.")
    dialect: Dialect = Dialect.OPENAI
    variant: AgentVariant = AgentVariant.TOOL_CALLING
    tools: tuple[str, ...] = ()
    remote_sources: tuple[str, ...] = ()
    delegates: tuple[str, ...] = ()
    max_steps: int = 10
    planning_interval: int | None = None
    temperature: float = 0.5
    max_tokens: int = 4500
    model_timeout: float = 60.0
    tool_timeout: float = 30.0
    max_retries: int = Field(default=3, ge=1, description="Total attempts for one model call, first try included.")
    stream: bool = False
    system_prompt: str | None = None
    final_answer_on_limit: bool = True


class RemoteSourceConfig(BaseModel):
    """How to launch one remote tool server."""

    model_config = ConfigDict(frozen=True)

    command: str = Field(..., min_length=1)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    credentials: dict[str, str] = Field(default_factory=dict, repr=False)
