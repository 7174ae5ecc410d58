"""Data models for traces and spans.

A logged execution is a tree: ``Trace`` is the root, ``WorkflowSpan`` and
``AgentSpan`` are containers that hold child spans, and ``LlmSpan``,
``RetrieverSpan`` and ``ToolSpan`` are leaves.

Every model normalizes what the caller hands it into the canonical shape of
its kind on construction:
- trace / workflow / agent / tool: input and output are strings
- retriever: input is a string, output is a list of ``Document``
- llm: input is a list of ``Message``, output is a single ``Message``

Structured values are deep-copied first so later mutation by the caller does
not leak into an already logged span.
"""

import copy
import logging
from datetime import datetime, UTC
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import InvalidStateError
from .serialization import convert_to_string_dict, to_string_value

logger = logging.getLogger(__name__)


class StepType(str, Enum):
    trace = "trace"
    workflow = "workflow"
    agent = "agent"
    llm = "llm"
    retriever = "retriever"
    tool = "tool"


CONTAINER_STEP_TYPES = frozenset({StepType.trace, StepType.workflow, StepType.agent})
LEAF_STEP_TYPES = frozenset({StepType.llm, StepType.retriever, StepType.tool})


def is_container_type(step_type: str) -> bool:
    """Tell container kinds (may hold child spans) from leaf kinds.

    Raises ValueError for anything that is not a known step type.
    """
    if step_type in CONTAINER_STEP_TYPES:
        return True
    if step_type in LEAF_STEP_TYPES:
        return False
    raise ValueError(f"Unknown step type: {step_type!r}")


class MessageRole(str, Enum):
    agent = "agent"
    assistant = "assistant"
    function = "function"
    system = "system"
    tool = "tool"
    user = "user"


class AgentType(str, Enum):
    default = "default"
    planner = "planner"
    react = "react"
    reflection = "reflection"
    router = "router"
    classifier = "classifier"
    supervisor = "supervisor"
    judge = "judge"


class EventType(str, Enum):
    """Kinds of events in reasoning or multi-turn model output."""

    message = "message"
    reasoning = "reasoning"
    internal_tool_call = "internal_tool_call"
    image_generation = "image_generation"
    mcp_call = "mcp_call"
    mcp_list_tools = "mcp_list_tools"
    mcp_approval_request = "mcp_approval_request"


class EventStatus(str, Enum):
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"
    incomplete = "incomplete"


class ToolCallFunction(BaseModel):
    name: str
    arguments: str


class ToolCall(BaseModel):
    id: str
    function: ToolCallFunction


class Message(BaseModel):
    """One chat message as logged on an LLM span."""

    content: str
    role: MessageRole
    tool_call_id: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None


class Document(BaseModel):
    """One retrieved chunk as logged on a retriever span."""

    content: str
    metadata: Dict[str, Union[bool, int, float, str]] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def stringify_complex_values(cls, v: Optional[Dict]) -> Dict:
        """Keep scalar metadata values, stringify everything else."""
        if not v:
            return {}
        return {
            str(key): value if isinstance(value, (bool, int, float, str)) else to_string_value(value)
            for key, value in v.items()
        }


class Event(BaseModel):
    """An event from a reasoning model (reasoning step, internal tool call, MCP call...).

    Kind-specific fields (``content``, ``summary``, ``tool_name``...) are kept as
    extra fields.
    """

    model_config = ConfigDict(extra="allow")

    type: EventType
    id: Optional[str] = None
    status: Optional[EventStatus] = None
    metadata: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


class Metrics(BaseModel):
    """Timing metrics; unknown metric names are kept as extra fields."""

    model_config = ConfigDict(extra="allow")

    duration_ns: Optional[int] = None


class LlmMetrics(Metrics):
    num_input_tokens: Optional[int] = None
    num_output_tokens: Optional[int] = None
    num_total_tokens: Optional[int] = None
    num_reasoning_tokens: Optional[int] = None
    num_cached_input_tokens: Optional[int] = None
    time_to_first_token_ns: Optional[int] = None


# ========================================================
# Input / output normalization
# ========================================================

def _copy_value(value: Any) -> Any:
    """Deep copy a caller value; objects that refuse to be copied are kept as-is."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    try:
        return copy.deepcopy(value)
    except Exception as e:
        logger.debug(f"Unable to copy value of type {type(value).__name__}: {e}")
        return value


def _to_optional_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    return to_string_value(value)


def convert_to_message(
    value: Any,
    default_role: MessageRole = MessageRole.user,
) -> Message:
    """Convert a string, mapping or message-like object into a ``Message``.

    A mapping with a valid ``role`` and ``content`` keeps its role, and its
    ``tool_call_id``/``tool_calls`` when they are well formed. Anything else is
    logged under ``default_role``, JSON encoded when it is not a string.
    """
    if isinstance(value, Message):
        return value.model_copy(deep=True)
    if isinstance(value, BaseModel):
        value = value.model_dump(exclude_none=True)

    if isinstance(value, dict) and "role" in value and "content" in value:
        role = value["role"]
        if isinstance(role, str) and role in MessageRole._value2member_map_:
            content = value["content"]
            message = Message(
                content="" if content is None else to_string_value(content),
                role=role,
            )
            if value.get("tool_call_id") is not None:
                message.tool_call_id = str(value["tool_call_id"])
            tool_calls = value.get("tool_calls")
            if isinstance(tool_calls, list):
                try:
                    message.tool_calls = [ToolCall.model_validate(call) for call in tool_calls]
                except ValidationError as e:
                    logger.warning(f"Dropping malformed tool calls from message: {e}")
            return message

    if isinstance(value, str):
        return Message(content=value, role=default_role)
    return Message(content=to_string_value(value), role=default_role)


def convert_llm_input(
    value: Any,
    default_role: MessageRole = MessageRole.user,
) -> List[Message]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [convert_to_message(item, default_role) for item in value]
    return [convert_to_message(value, default_role)]


def convert_llm_output(
    value: Any,
    default_role: MessageRole = MessageRole.assistant,
) -> Message:
    if value is None:
        return Message(content="", role=default_role)
    if isinstance(value, (list, tuple)):
        # A single choice is logged as that message, several are kept together
        if len(value) == 1:
            return convert_to_message(value[0], default_role)
        return Message(content=to_string_value(value), role=default_role)
    return convert_to_message(value, default_role)


def _to_document(value: Any) -> Optional[Document]:
    if isinstance(value, Document):
        return value.model_copy(deep=True)
    if isinstance(value, str):
        return Document(content=value)
    if isinstance(value, dict) and "content" in value and "metadata" in value:
        try:
            return Document(
                content=to_string_value(value["content"]),
                metadata=value["metadata"],
            )
        except ValidationError as e:
            logger.warning(f"Unable to convert mapping to Document: {e}")
    return None


def convert_retriever_output(value: Any) -> List[Document]:
    """Convert retriever results into a list of documents.

    Falls back to a single document holding the JSON of ``value``.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        documents = [_to_document(item) for item in value]
        if all(document is not None for document in documents):
            return documents
    else:
        document = _to_document(value)
        if document is not None:
            return [document]
    return [Document(content=to_string_value(value))]


# ========================================================
# Steps
# ========================================================

class BaseStep(BaseModel):
    """Fields and behavior shared by the trace and every span kind.

    ``type`` is fixed at construction; assigning to it raises.
    """

    type: str = Field(frozen=True)
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = ""
    input: Any = None
    redacted_input: Any = None
    output: Any = None
    redacted_output: Any = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    user_metadata: Dict[str, str] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    status_code: Optional[int] = None
    metrics: Metrics = Field(default_factory=Metrics)
    external_id: Optional[str] = None
    step_number: Optional[int] = None
    dataset_input: Optional[str] = None
    dataset_output: Optional[str] = None
    dataset_metadata: Dict[str, str] = Field(default_factory=dict)

    _parent: Optional["BaseStep"] = PrivateAttr(default=None)

    @classmethod
    def coerce_input(cls, value: Any) -> Any:
        """Normalize a caller value into this kind's input shape."""
        return value

    @classmethod
    def coerce_output(cls, value: Any) -> Any:
        """Normalize a caller value into this kind's output shape."""
        return value

    @field_validator("input", mode="before")
    @classmethod
    def normalize_input(cls, v: Any) -> Any:
        return cls.coerce_input(_copy_value(v))

    @field_validator("output", mode="before")
    @classmethod
    def normalize_output(cls, v: Any) -> Any:
        return cls.coerce_output(_copy_value(v))

    @field_validator("redacted_input", mode="before")
    @classmethod
    def normalize_redacted_input(cls, v: Any) -> Any:
        if v is None:
            return v
        return cls.coerce_input(_copy_value(v))

    @field_validator("redacted_output", mode="before")
    @classmethod
    def normalize_redacted_output(cls, v: Any) -> Any:
        if v is None:
            return v
        return cls.coerce_output(_copy_value(v))

    @field_validator("user_metadata", "dataset_metadata", mode="before")
    @classmethod
    def stringify_metadata(cls, v: Optional[Dict]) -> Dict[str, str]:
        return convert_to_string_dict(v)

    @field_validator("tags", mode="before")
    @classmethod
    def default_tags(cls, v: Optional[List[str]]) -> List[str]:
        return list(v) if v else []

    @model_validator(mode="after")
    def default_name(self) -> "BaseStep":
        if not self.name:
            self.name = self.type
        return self

    @property
    def parent(self) -> Optional["BaseStep"]:
        """The container this span was added to, if any."""
        return self._parent

    def conclude(
        self,
        output: Any = None,
        duration_ns: Optional[int] = None,
        status_code: Optional[int] = None,
    ) -> None:
        """Record the final output, status and duration of this step.

        The previous output is kept when ``output`` is None.
        """
        if output is not None:
            self.output = self.coerce_output(_copy_value(output))
        self.status_code = status_code
        if duration_ns is not None:
            self.metrics.duration_ns = duration_ns

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the step (and its children) into plain JSON types."""
        return self.model_dump(mode="json", exclude_none=True)


class StepWithChildSpans(BaseStep):
    """A step that owns an ordered list of child spans."""

    input: str = ""
    redacted_input: Optional[str] = None
    output: Optional[str] = None
    redacted_output: Optional[str] = None
    spans: List["Span"] = Field(default_factory=list)

    @classmethod
    def coerce_input(cls, value: Any) -> Any:
        return "" if value is None else to_string_value(value)

    @classmethod
    def coerce_output(cls, value: Any) -> Any:
        return _to_optional_string(value)

    @model_validator(mode="after")
    def claim_children(self) -> "StepWithChildSpans":
        for span in self.spans:
            if span._parent is None:
                span._parent = self
        return self

    def add_child_span(self, *spans: "Span") -> None:
        """Append spans to the end of this step's children, in call order."""
        for span in spans:
            if isinstance(span, Trace):
                raise InvalidStateError("A trace is always the root and cannot be added as a child span.")
            if span._parent is not None:
                raise InvalidStateError(
                    f"Span '{span.name}' already belongs to '{span._parent.name}' and cannot be re-parented."
                )
            ancestor: Optional[BaseStep] = self
            while ancestor is not None:
                if ancestor is span:
                    raise InvalidStateError(f"Adding span '{span.name}' would create a cycle.")
                ancestor = ancestor._parent
            span._parent = self
            self.spans.append(span)


class WorkflowSpan(StepWithChildSpans):
    type: Literal["workflow"] = Field(default="workflow", frozen=True)


class AgentSpan(StepWithChildSpans):
    type: Literal["agent"] = Field(default="agent", frozen=True)
    agent_type: AgentType = AgentType.default


class LlmSpan(BaseStep):
    type: Literal["llm"] = Field(default="llm", frozen=True)
    input: List[Message] = Field(default_factory=list)
    redacted_input: Optional[List[Message]] = None
    output: Message = Field(default_factory=lambda: Message(content="", role=MessageRole.assistant))
    redacted_output: Optional[Message] = None
    metrics: LlmMetrics = Field(default_factory=LlmMetrics)
    tools: Optional[List[Dict[str, Any]]] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    finish_reason: Optional[str] = None
    events: Optional[List[Event]] = None

    @classmethod
    def coerce_input(cls, value: Any) -> Any:
        return convert_llm_input(value)

    @classmethod
    def coerce_output(cls, value: Any) -> Any:
        return convert_llm_output(value)


class RetrieverSpan(BaseStep):
    type: Literal["retriever"] = Field(default="retriever", frozen=True)
    input: str = ""
    redacted_input: Optional[str] = None
    output: List[Document] = Field(default_factory=list)
    redacted_output: Optional[List[Document]] = None

    @classmethod
    def coerce_input(cls, value: Any) -> Any:
        return "" if value is None else to_string_value(value)

    @classmethod
    def coerce_output(cls, value: Any) -> Any:
        return convert_retriever_output(value)


class ToolSpan(BaseStep):
    type: Literal["tool"] = Field(default="tool", frozen=True)
    input: str = ""
    redacted_input: Optional[str] = None
    output: Optional[str] = None
    redacted_output: Optional[str] = None
    tool_call_id: Optional[str] = None

    @classmethod
    def coerce_input(cls, value: Any) -> Any:
        return "" if value is None else to_string_value(value)

    @classmethod
    def coerce_output(cls, value: Any) -> Any:
        return _to_optional_string(value)


Span = Annotated[
    Union[WorkflowSpan, AgentSpan, LlmSpan, RetrieverSpan, ToolSpan],
    Field(discriminator="type"),
]


class Trace(StepWithChildSpans):
    """Root of one logged execution."""

    type: Literal["trace"] = Field(default="trace", frozen=True)


StepWithChildSpans.model_rebuild()
WorkflowSpan.model_rebuild()
AgentSpan.model_rebuild()
Trace.model_rebuild()
