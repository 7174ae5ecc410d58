"""spanlog - span and trace logging for LLM applications"""

from .api_client import TraceApiClient
from .callback import SpanLogCallback
from .context import LoggingScope, get_store, logging_context, run, scope
from .errors import InvalidStateError, SpanLogError, TransportError
from .logger import TraceLogger
from .models import (
    AgentSpan,
    AgentType,
    Document,
    Event,
    LlmMetrics,
    LlmSpan,
    Message,
    MessageRole,
    Metrics,
    RetrieverSpan,
    Span,
    StepType,
    ToolSpan,
    Trace,
    WorkflowSpan,
)
from .openai_wrapper import log_chat_completion, log_response, wrap_openai
from .registry import (
    LoggerRegistry,
    flush,
    flush_all,
    get_logger,
    init,
    reset,
    reset_all,
)
from .wrappers import log

__all__ = [
    "TraceApiClient",
    "SpanLogCallback",
    "LoggingScope",
    "get_store",
    "logging_context",
    "run",
    "scope",
    "InvalidStateError",
    "SpanLogError",
    "TransportError",
    "TraceLogger",
    "AgentSpan",
    "AgentType",
    "Document",
    "Event",
    "LlmMetrics",
    "LlmSpan",
    "Message",
    "MessageRole",
    "Metrics",
    "RetrieverSpan",
    "Span",
    "StepType",
    "ToolSpan",
    "Trace",
    "WorkflowSpan",
    "log_chat_completion",
    "log_response",
    "wrap_openai",
    "LoggerRegistry",
    "flush",
    "flush_all",
    "get_logger",
    "init",
    "reset",
    "reset_all",
    "log",
]

__version__ = "0.1.0"
