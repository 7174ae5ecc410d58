"""Trace logger: builds span trees and hands finished traces to the collection service.

A logger keeps the list of traces logged since the last flush and a stack of
open container spans (the trace itself, then nested workflow / agent spans).
New spans are attached to the top of that stack.

When called inside a ``spanlog.context`` scope that carries a stack for this
logger, the scope's stack is used instead of the logger's own one. That is how
concurrent instrumented calls sharing one logger keep separate insertion
points.

Examples
--------
    ```python
    trace_logger = TraceLogger(project="chatbot", log_stream="prod")
    trace_logger.start_trace(input="What is the capital of France?")
    trace_logger.add_workflow_span(input="plan", name="planner")
    trace_logger.add_llm_span(
        input=[{"role": "user", "content": "What is the capital of France?"}],
        output={"role": "assistant", "content": "Paris"},
        model="gpt-4o",
    )
    trace_logger.conclude(output="Paris")   # closes the workflow span
    trace_logger.conclude(output="Paris")   # closes the trace
    trace_logger.flush()
    ```
"""

import os
import functools
import logging
from typing import Any, Callable, Dict, List, Optional

from .api_client import TraceApiClient
from .context import get_store, LoggingScope
from .errors import InvalidStateError
from .models import (
    AgentSpan,
    AgentType,
    BaseStep,
    Event,
    LlmMetrics,
    LlmSpan,
    Message,
    Metrics,
    RetrieverSpan,
    StepWithChildSpans,
    ToolSpan,
    Trace,
    WorkflowSpan,
    is_container_type,
)
from .serialization import to_string_value

logger = logging.getLogger(__name__)

DEFAULT_MODE = "batch"


def _skip_if_disabled(default_factory: Callable[[], Any]):
    """Return ``default_factory()`` instead of running the method when logging is disabled."""
    def decorator(method):
        @functools.wraps(method)
        def wrapper(self: "TraceLogger", *args, **kwargs):
            if not self.enabled:
                logger.warning(f"Logging is disabled, skipping execution of {method.__name__}")
                return default_factory()
            return method(self, *args, **kwargs)
        return wrapper
    return decorator


def _is_logging_enabled() -> bool:
    return os.getenv("TRACING_ENABLED", "true").strip().lower() not in ("false", "0", "no")


class TraceLogger:
    """Logger for one project and log stream (or experiment).

    Attributes
    ----------
    project: str
        Project the traces are uploaded to.
    log_stream: Optional[str]
        Log stream the traces are uploaded to.
    experiment_id: Optional[str]
        Experiment the traces are uploaded to; takes precedence over the log stream.
    mode: str
        Logger mode, part of the registry key.
    traces: List[Trace]
        Traces logged since the last flush, in start order.
    enabled: bool
        False when TRACING_ENABLED=false; every operation is then a no-op.
    """

    def __init__(
        self,
        project: Optional[str] = None,
        log_stream: Optional[str] = None,
        experiment_id: Optional[str] = None,
        session_id: Optional[str] = None,
        mode: str = DEFAULT_MODE,
        client: Optional[TraceApiClient] = None,
    ):
        """Initialize the logger.

        Parameters
        ----------
        project: Optional[str]
            Project name. (default: TRACER_PROJECT, then TRACER_PROJECT_NAME, then "default")
        log_stream: Optional[str]
            Log stream name. (default: TRACER_LOG_STREAM, then TRACER_LOG_STREAM_NAME, then "default")
        experiment_id: Optional[str]
            Experiment id. (default: TRACER_EXPERIMENT_ID)
        session_id: Optional[str]
            Session to attach uploaded traces to.
        mode: str
            Logger mode (default: "batch").
        client: Optional[TraceApiClient]
            Transport used by flush. Created on first flush when not given.
        """
        self.project = (
            project or os.getenv("TRACER_PROJECT") or os.getenv("TRACER_PROJECT_NAME") or "default"
        )
        self.experiment_id = experiment_id or os.getenv("TRACER_EXPERIMENT_ID")
        self.log_stream = log_stream or os.getenv("TRACER_LOG_STREAM") or os.getenv("TRACER_LOG_STREAM_NAME")
        if not self.log_stream and not self.experiment_id:
            self.log_stream = "default"
        self.mode = mode
        self.enabled = _is_logging_enabled()

        self._session_id = session_id
        self._client = client
        self._owns_client = False
        self._parent_stack: List[StepWithChildSpans] = []
        self.traces: List[Trace] = []

        if not self.enabled:
            logger.info("TraceLogger initialized but logging is disabled.")

    def __repr__(self) -> str:
        target = f"experiment={self.experiment_id}" if self.experiment_id else f"log_stream={self.log_stream}"
        return f"TraceLogger(project={self.project}, {target}, mode={self.mode})"

    # ========================================================
    # Parent stack
    # ========================================================

    @property
    def parent_stack(self) -> List[StepWithChildSpans]:
        """Open container spans for the calling context, top of stack last."""
        store = get_store()
        if isinstance(store, LoggingScope):
            stack = store.stack_for(self)
            if stack is not None:
                return stack
        return self._parent_stack

    def current_parent(self) -> Optional[StepWithChildSpans]:
        """The span new spans attach to, or None when no trace is open."""
        stack = self.parent_stack
        return stack[-1] if stack else None

    def has_active_trace(self) -> bool:
        return self.current_parent() is not None

    def is_pending(self, step: BaseStep) -> bool:
        """Whether ``step`` belongs to a trace of this logger that has not been flushed."""
        root = step
        while root.parent is not None:
            root = root.parent
        return any(trace is root for trace in self.traces)

    @staticmethod
    def get_last_output(node: Optional[BaseStep]) -> Optional[str]:
        """Output of ``node``, or of its last descendant that has one."""
        if node is None:
            return None
        if node.output is not None and node.output != []:
            if isinstance(node.output, str):
                return node.output
            if isinstance(node.output, Message):
                return node.output.content
            return to_string_value(node.output)
        if isinstance(node, StepWithChildSpans) and node.spans:
            return TraceLogger.get_last_output(node.spans[-1])
        return None

    def _add_child_span_to_parent(self, span: BaseStep) -> None:
        current_parent = self.current_parent()
        if current_parent is None:
            raise InvalidStateError("A trace needs to be created in order to add a span.")
        span.dataset_input = current_parent.dataset_input
        span.dataset_output = current_parent.dataset_output
        span.dataset_metadata = dict(current_parent.dataset_metadata)
        current_parent.add_child_span(span)
        # Containers become the insertion point until concluded, leaves never do
        if is_container_type(span.type):
            self.parent_stack.append(span)

    # ========================================================
    # Sessions
    # ========================================================

    def _get_client(self) -> TraceApiClient:
        if self._client is None:
            self._client = TraceApiClient()
            self._owns_client = True
        return self._client

    @_skip_if_disabled(lambda: None)
    def start_session(
        self,
        name: Optional[str] = None,
        previous_session_id: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> str:
        """Create a session on the collection service and attach future uploads to it."""
        session_id = self._get_client().create_session(
            project=self.project,
            name=name,
            previous_session_id=previous_session_id,
            external_id=external_id,
            log_stream=None if self.experiment_id else self.log_stream,
            experiment_id=self.experiment_id,
        )
        self._session_id = session_id
        logger.info(f"Session started: {session_id}")
        return session_id

    def set_session_id(self, session_id: str) -> None:
        self._session_id = session_id
        logger.info(f"Session ID set: {session_id}")

    def clear_session(self) -> None:
        self._session_id = None
        logger.info("Session cleared.")

    def current_session_id(self) -> Optional[str]:
        return self._session_id

    # ========================================================
    # Trace and span creation
    # ========================================================

    @_skip_if_disabled(lambda: Trace(input=""))
    def start_trace(
        self,
        input: Any,
        output: Optional[Any] = None,
        name: Optional[str] = None,
        created_at: Optional[Any] = None,
        duration_ns: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        dataset_input: Optional[str] = None,
        dataset_output: Optional[str] = None,
        dataset_metadata: Optional[Dict[str, Any]] = None,
        external_id: Optional[str] = None,
    ) -> Trace:
        """Start a new trace and make it the current parent.

        Raises
        ------
        InvalidStateError
            If a trace is already open in the calling context.
        """
        if self.current_parent() is not None:
            raise InvalidStateError("You must conclude the existing trace before adding a new one.")

        trace = Trace(
            **_step_kwargs(
                input=input,
                output=output,
                name=name,
                created_at=created_at,
                metadata=metadata,
                tags=tags,
                external_id=external_id,
                dataset_input=dataset_input,
                dataset_output=dataset_output,
                dataset_metadata=dataset_metadata,
            ),
            metrics=Metrics(duration_ns=duration_ns),
        )
        self.traces.append(trace)
        self.parent_stack.append(trace)
        return trace

    @_skip_if_disabled(lambda: Trace(input=""))
    def add_single_llm_span_trace(
        self,
        input: Any,
        output: Any,
        model: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        name: Optional[str] = None,
        created_at: Optional[Any] = None,
        duration_ns: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        num_input_tokens: Optional[int] = None,
        num_output_tokens: Optional[int] = None,
        total_tokens: Optional[int] = None,
        time_to_first_token_ns: Optional[int] = None,
        temperature: Optional[float] = None,
        status_code: Optional[int] = None,
        span_step_number: Optional[int] = None,
        dataset_input: Optional[str] = None,
        dataset_output: Optional[str] = None,
        dataset_metadata: Optional[Dict[str, Any]] = None,
    ) -> Trace:
        """Log a complete trace holding a single LLM span.

        Raises
        ------
        InvalidStateError
            If a trace is already open in the calling context.
        """
        if self.current_parent() is not None:
            raise InvalidStateError(
                "A trace cannot be created within a parent trace or span, it must always be the root. "
                "You must conclude the existing trace before adding a new one."
            )

        trace = self.start_trace(
            input=input,
            output=output,
            name=name,
            created_at=created_at,
            duration_ns=duration_ns,
            metadata=metadata,
            tags=tags,
            dataset_input=dataset_input,
            dataset_output=dataset_output,
            dataset_metadata=dataset_metadata,
        )
        self.add_llm_span(
            input=input,
            output=output,
            model=model,
            tools=tools,
            name=name,
            created_at=created_at,
            duration_ns=duration_ns,
            metadata=metadata,
            tags=tags,
            num_input_tokens=num_input_tokens,
            num_output_tokens=num_output_tokens,
            total_tokens=total_tokens,
            time_to_first_token_ns=time_to_first_token_ns,
            temperature=temperature,
            status_code=status_code,
            step_number=span_step_number,
        )
        self.conclude(duration_ns=duration_ns, status_code=status_code)
        return trace

    @_skip_if_disabled(lambda: LlmSpan())
    def add_llm_span(
        self,
        input: Any,
        output: Any,
        model: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        name: Optional[str] = None,
        created_at: Optional[Any] = None,
        duration_ns: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        num_input_tokens: Optional[int] = None,
        num_output_tokens: Optional[int] = None,
        total_tokens: Optional[int] = None,
        num_reasoning_tokens: Optional[int] = None,
        num_cached_input_tokens: Optional[int] = None,
        time_to_first_token_ns: Optional[int] = None,
        temperature: Optional[float] = None,
        status_code: Optional[int] = None,
        finish_reason: Optional[str] = None,
        events: Optional[List[Event]] = None,
        step_number: Optional[int] = None,
        redacted_input: Optional[Any] = None,
        redacted_output: Optional[Any] = None,
    ) -> LlmSpan:
        """Add an LLM span to the current parent.

        Raises
        ------
        InvalidStateError
            If no trace is open in the calling context.
        """
        self._require_parent()
        span = LlmSpan(
            **_step_kwargs(
                input=input,
                output=output,
                redacted_input=redacted_input,
                redacted_output=redacted_output,
                name=name,
                created_at=created_at,
                metadata=metadata,
                tags=tags,
                status_code=status_code,
                step_number=step_number,
            ),
            metrics=LlmMetrics(
                duration_ns=duration_ns,
                num_input_tokens=num_input_tokens,
                num_output_tokens=num_output_tokens,
                num_total_tokens=total_tokens,
                num_reasoning_tokens=num_reasoning_tokens,
                num_cached_input_tokens=num_cached_input_tokens,
                time_to_first_token_ns=time_to_first_token_ns,
            ),
            tools=tools,
            model=model,
            temperature=temperature,
            finish_reason=finish_reason,
            events=events,
        )
        self._add_child_span_to_parent(span)
        return span

    @_skip_if_disabled(lambda: RetrieverSpan())
    def add_retriever_span(
        self,
        input: Any,
        output: Any,
        name: Optional[str] = None,
        duration_ns: Optional[int] = None,
        created_at: Optional[Any] = None,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        status_code: Optional[int] = None,
        step_number: Optional[int] = None,
        redacted_input: Optional[Any] = None,
        redacted_output: Optional[Any] = None,
    ) -> RetrieverSpan:
        """Add a retriever span to the current parent.

        Raises
        ------
        InvalidStateError
            If no trace is open in the calling context.
        """
        self._require_parent()
        span = RetrieverSpan(
            **_step_kwargs(
                input=input,
                output=output,
                redacted_input=redacted_input,
                redacted_output=redacted_output,
                name=name,
                created_at=created_at,
                metadata=metadata,
                tags=tags,
                status_code=status_code,
                step_number=step_number,
            ),
            metrics=Metrics(duration_ns=duration_ns),
        )
        self._add_child_span_to_parent(span)
        return span

    @_skip_if_disabled(lambda: ToolSpan())
    def add_tool_span(
        self,
        input: Any,
        output: Optional[Any] = None,
        name: Optional[str] = None,
        duration_ns: Optional[int] = None,
        created_at: Optional[Any] = None,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        status_code: Optional[int] = None,
        tool_call_id: Optional[str] = None,
        step_number: Optional[int] = None,
        redacted_input: Optional[Any] = None,
        redacted_output: Optional[Any] = None,
    ) -> ToolSpan:
        """Add a tool span to the current parent.

        Raises
        ------
        InvalidStateError
            If no trace is open in the calling context.
        """
        self._require_parent()
        span = ToolSpan(
            **_step_kwargs(
                input=input,
                output=output,
                redacted_input=redacted_input,
                redacted_output=redacted_output,
                name=name,
                created_at=created_at,
                metadata=metadata,
                tags=tags,
                status_code=status_code,
                step_number=step_number,
            ),
            metrics=Metrics(duration_ns=duration_ns),
            tool_call_id=tool_call_id,
        )
        self._add_child_span_to_parent(span)
        return span

    @_skip_if_disabled(lambda: WorkflowSpan())
    def add_workflow_span(
        self,
        input: Any,
        output: Optional[Any] = None,
        name: Optional[str] = None,
        duration_ns: Optional[int] = None,
        created_at: Optional[Any] = None,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        step_number: Optional[int] = None,
    ) -> WorkflowSpan:
        """Add a workflow span to the current parent and make it the new current parent.

        Spans added afterwards nest under it until ``conclude()`` is called.

        Raises
        ------
        InvalidStateError
            If no trace is open in the calling context.
        """
        self._require_parent()
        span = WorkflowSpan(
            **_step_kwargs(
                input=input,
                output=output,
                name=name,
                created_at=created_at,
                metadata=metadata,
                tags=tags,
                step_number=step_number,
            ),
            metrics=Metrics(duration_ns=duration_ns),
        )
        self._add_child_span_to_parent(span)
        return span

    @_skip_if_disabled(lambda: AgentSpan())
    def add_agent_span(
        self,
        input: Any,
        output: Optional[Any] = None,
        name: Optional[str] = None,
        duration_ns: Optional[int] = None,
        created_at: Optional[Any] = None,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        agent_type: Optional[AgentType] = None,
        step_number: Optional[int] = None,
    ) -> AgentSpan:
        """Add an agent span to the current parent and make it the new current parent.

        Raises
        ------
        InvalidStateError
            If no trace is open in the calling context.
        """
        self._require_parent()
        span = AgentSpan(
            **_step_kwargs(
                input=input,
                output=output,
                name=name,
                created_at=created_at,
                metadata=metadata,
                tags=tags,
                step_number=step_number,
            ),
            metrics=Metrics(duration_ns=duration_ns),
            agent_type=agent_type or AgentType.default,
        )
        self._add_child_span_to_parent(span)
        return span

    def _require_parent(self) -> None:
        if self.current_parent() is None:
            raise InvalidStateError("A trace needs to be created in order to add a span.")

    # ========================================================
    # Conclusion
    # ========================================================

    def _conclude_current_parent(
        self,
        output: Optional[Any],
        duration_ns: Optional[int],
        status_code: Optional[int],
    ) -> Optional[StepWithChildSpans]:
        stack = self.parent_stack
        current_parent = stack[-1] if stack else None
        if current_parent is None:
            raise InvalidStateError("No existing workflow to conclude.")

        current_parent.conclude(output=output, duration_ns=duration_ns, status_code=status_code)

        finished_step = stack.pop()
        if not stack and not isinstance(finished_step, Trace):
            raise InvalidStateError(
                f"Finished step '{finished_step.name}' is not a trace, but has no parent. "
                "Not added to the list of traces."
            )
        return self.current_parent()

    @_skip_if_disabled(lambda: None)
    def conclude(
        self,
        output: Optional[Any] = None,
        duration_ns: Optional[int] = None,
        status_code: Optional[int] = None,
        conclude_all: bool = False,
    ) -> Optional[StepWithChildSpans]:
        """Conclude the current trace or container span and return the new current parent.

        Parameters
        ----------
        output: Optional[Any]
            Final output; the span keeps its previous output when None.
        duration_ns: Optional[int]
            Duration in nanoseconds.
        status_code: Optional[int]
            Status code of the concluded step.
        conclude_all: bool
            Conclude every open step, down to and including the trace.

        Raises
        ------
        InvalidStateError
            If nothing is open, or a nested span turns out to have no parent.
        """
        if not conclude_all:
            return self._conclude_current_parent(output, duration_ns, status_code)

        current_parent = None
        while self.current_parent() is not None:
            current_parent = self._conclude_current_parent(output, duration_ns, status_code)
        return current_parent

    # ========================================================
    # Upload
    # ========================================================

    def _detach_traces(self) -> List[Trace]:
        """Conclude anything still open and take ownership of the trace list.

        Local references are dropped before the upload starts, so nothing can
        mutate the trees while they are in flight.
        """
        current_parent = self.current_parent()
        if current_parent is not None:
            logger.info("Concluding the active trace...")
            while self.current_parent() is not None:
                node = self.current_parent()
                self._conclude_current_parent(self.get_last_output(node), None, None)

        traces = self.traces
        self.traces = []
        self.parent_stack.clear()
        self._parent_stack = []
        return traces

    def _ingest_kwargs(self) -> Dict[str, Any]:
        return {
            "project": self.project,
            "log_stream": self.log_stream,
            "experiment_id": self.experiment_id,
            "session_id": self._session_id,
        }

    @_skip_if_disabled(list)
    def flush(self) -> List[Trace]:
        """Upload every logged trace and clear the local buffer.

        Returns the uploaded traces, or an empty list when there was nothing to
        upload or the upload failed. Traces from a failed upload are dropped.
        """
        if not self.traces:
            logger.warning("No traces to flush.")
            return []

        traces = self._detach_traces()
        logger.info(f"Flushing {len(traces)} traces...")
        try:
            self._get_client().ingest_traces(
                [trace.to_dict() for trace in traces], **self._ingest_kwargs()
            )
        except Exception as e:
            logger.error(f"Failed to flush {len(traces)} traces, dropping them: {e}")
            return []

        logger.info(f"Successfully flushed {len(traces)} traces.")
        return traces

    async def async_flush(self) -> List[Trace]:
        """Async version of ``flush``."""
        if not self.enabled:
            logger.warning("Logging is disabled, skipping execution of async_flush")
            return []
        if not self.traces:
            logger.warning("No traces to flush.")
            return []

        traces = self._detach_traces()
        logger.info(f"Flushing {len(traces)} traces...")
        try:
            await self._get_client().aingest_traces(
                [trace.to_dict() for trace in traces], **self._ingest_kwargs()
            )
        except Exception as e:
            logger.error(f"Failed to flush {len(traces)} traces, dropping them: {e}")
            return []

        logger.info(f"Successfully flushed {len(traces)} traces.")
        return traces

    def close(self) -> None:
        """Close the transport if this logger created it.

        A client passed to the constructor belongs to the caller and is left open.
        """
        if self._client is None or not self._owns_client:
            return
        self._client.close()
        self._client = None
        self._owns_client = False

    def terminate(self) -> None:
        """Best-effort flush, then close the transport; never raises."""
        try:
            self.flush()
        except Exception as e:
            logger.error(f"Error while terminating logger {self!r}: {e}")
        try:
            self.close()
        except Exception as e:
            logger.error(f"Error while closing the transport of {self!r}: {e}")


def _step_kwargs(**kwargs) -> Dict[str, Any]:
    """Map logger arguments onto model fields, dropping unset ones."""
    metadata = kwargs.pop("metadata", None)
    if metadata is not None:
        kwargs["user_metadata"] = metadata
    return {key: value for key, value in kwargs.items() if value is not None}
