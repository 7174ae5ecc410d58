"""The ``log`` decorator: record a function call as a span.

Works on plain functions, coroutine functions, generator functions and async
generator functions. Each call runs in its own child ``LoggingScope`` so
concurrent calls sharing one logger keep their own parent stacks.

Examples
--------
    ```python
    from spanlog import log

    @log
    def answer(question: str) -> str:
        docs = search(question)
        return summarize(question, docs)

    @log(span_type="retriever")
    def search(query: str) -> list:
        return ["Paris is the capital of France."]

    @log(span_type="llm", name="summarizer")
    async def summarize(question: str, docs: list, model: str = "gpt-4o") -> str:
        ...
    ```
"""

import functools
import inspect
import logging
import time
from contextlib import contextmanager
from datetime import datetime, UTC
from typing import Any, Callable, Dict, Iterator, List, Optional

from . import context
from .logger import TraceLogger
from .models import StepType, StepWithChildSpans
from .registry import LoggerRegistry
from .serialization import aggregate_items, args_to_dict, to_json

logger = logging.getLogger(__name__)

_DONE = object()


class _LoggedCall:
    """Span bookkeeping for one invocation of a logged function.

    Bookkeeping failures are logged and swallowed; they never change the
    outcome of the wrapped call.
    """

    def __init__(self, options: Dict[str, Any], name: str, fn: Callable, args: tuple, kwargs: dict):
        self.options = options
        self.name = name
        self.span_type = options["span_type"]
        self.trace_logger: Optional[TraceLogger] = None
        self.scope: Optional[context.LoggingScope] = None
        self.started_trace = None
        self.span: Optional[StepWithChildSpans] = None
        self.created_at = datetime.now(UTC)
        self.start_ns = time.perf_counter_ns()

        try:
            self.args_dict = args_to_dict(fn, args, kwargs)
            self.input = to_json(self.args_dict)
        except Exception as e:
            logger.warning(f"Unable to capture arguments of {name}: {e}")
            self.args_dict = {}
            self.input = ""

    @contextmanager
    def entered(self) -> Iterator[None]:
        """Run the enclosed block inside this call's scope."""
        if self.scope is None:
            yield
            return
        with context.scope(self.scope):
            yield

    def open(self) -> None:
        try:
            self.trace_logger = LoggerRegistry.instance().get(
                project=self.options["project"],
                log_stream=self.options["log_stream"],
                experiment_id=self.options["experiment_id"],
            )
            if not self.trace_logger.enabled:
                self.trace_logger = None
                return
            self.scope = context.current_scope().child(self.trace_logger, self.trace_logger.parent_stack)
        except Exception as e:
            logger.warning(f"Unable to resolve a logger for {self.name}, call will not be logged: {e}")
            self.trace_logger = None
            self.scope = None
            return

        with self.entered():
            try:
                if self.trace_logger.current_parent() is None:
                    self.started_trace = self.trace_logger.start_trace(
                        input=self.input,
                        name=self.name,
                        created_at=self.created_at,
                        metadata=self.options["metadata"],
                        tags=self.options["tags"],
                    )
                if self.span_type == StepType.workflow:
                    self.span = self.trace_logger.add_workflow_span(**self._span_kwargs())
                elif self.span_type == StepType.agent:
                    self.span = self.trace_logger.add_agent_span(**self._span_kwargs())
            except Exception as e:
                logger.warning(f"Unable to open span for {self.name}: {e}")

    def _span_kwargs(self) -> Dict[str, Any]:
        return {
            "input": self.input,
            "name": self.name,
            "created_at": self.created_at,
            "metadata": self.options["metadata"],
            "tags": self.options["tags"],
        }

    def close(self, output: Any) -> None:
        """Record ``output`` on the spans this call opened and conclude them."""
        if self.trace_logger is None:
            return
        duration_ns = time.perf_counter_ns() - self.start_ns
        with self.entered():
            try:
                self._add_leaf_span(output, duration_ns)
                if self.span is not None:
                    self._conclude_own(self.span, output, duration_ns)
                if self.started_trace is not None:
                    self._conclude_own(self.started_trace, output, duration_ns)
            except Exception as e:
                logger.warning(f"Unable to conclude span for {self.name}: {e}")

    def _add_leaf_span(self, output: Any, duration_ns: int) -> None:
        if self.span_type not in (StepType.llm, StepType.retriever, StepType.tool):
            return
        parent = self.trace_logger.current_parent()
        if parent is None or not self.trace_logger.is_pending(parent):
            logger.warning(f"The trace of {self.name} was flushed before it returned, its span is not logged.")
            return
        kwargs = self._span_kwargs()
        kwargs["duration_ns"] = duration_ns
        if self.span_type == StepType.llm:
            kwargs["input"] = self.args_dict
            self.trace_logger.add_llm_span(output=output, model=self.args_dict.get("model"), **kwargs)
        elif self.span_type == StepType.retriever:
            self.trace_logger.add_retriever_span(output=output, **kwargs)
        elif self.span_type == StepType.tool:
            self.trace_logger.add_tool_span(output=output, **kwargs)

    def _conclude_own(self, step: StepWithChildSpans, output: Any, duration_ns: int) -> None:
        on_stack = any(frame is step for frame in self.trace_logger.parent_stack)
        if not on_stack or not self.trace_logger.is_pending(step):
            # Flushed spans are never mutated
            logger.warning(f"Span '{step.name}' was concluded or flushed before {self.name} returned, leaving it as is.")
            return
        # Frames the function body left open are closed with their last child's output
        while self.trace_logger.current_parent() is not step:
            left_open = self.trace_logger.current_parent()
            logger.warning(f"Span '{left_open.name}' was left open inside {self.name}, concluding it.")
            self.trace_logger.conclude(output=TraceLogger.get_last_output(left_open))
        self.trace_logger.conclude(output=output, duration_ns=duration_ns)


def _error_output(error: BaseException) -> str:
    return f"Error: {error}"


def log(
    func: Optional[Callable] = None,
    *,
    span_type: str = "workflow",
    name: Optional[str] = None,
    project: Optional[str] = None,
    log_stream: Optional[str] = None,
    experiment_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    tags: Optional[List[str]] = None,
):
    """Log every call of the decorated function as a span.

    A trace is started when the call has no open parent, and concluded when
    the call returns. Workflow and agent spans are opened before the call and
    hold the spans created during it; llm, retriever and tool spans are added
    after the call with its result as output. Errors raised by the function
    are re-raised unchanged after the span records ``"Error: <message>"``.

    For generator functions the span output is the aggregate of all yielded
    items (concatenated when they are all strings), recorded once the
    generator is exhausted, closed or fails.

    Parameters
    ----------
    span_type: str
        One of "workflow", "agent", "llm", "retriever", "tool" (default: "workflow").
    name: Optional[str]
        Span name (default: the function name).
    project, log_stream, experiment_id: Optional[str]
        Logger to record to; resolved through the registry when unset.
    metadata: Optional[Dict[str, Any]]
        Metadata attached to the span.
    tags: Optional[List[str]]
        Tags attached to the span.
    """
    if span_type not in StepType._value2member_map_ or span_type == StepType.trace:
        raise ValueError(f"Unsupported span type: {span_type}")

    options = {
        "span_type": StepType(span_type),
        "project": project,
        "log_stream": log_stream,
        "experiment_id": experiment_id,
        "metadata": metadata,
        "tags": tags,
    }

    def decorator(fn: Callable) -> Callable:
        span_name = name or getattr(fn, "__name__", None) or "Function"

        if inspect.isasyncgenfunction(fn):
            @functools.wraps(fn)
            async def async_gen_wrapper(*args, **kwargs):
                call = _LoggedCall(options, span_name, fn, args, kwargs)
                call.open()
                items = []
                with call.entered():
                    agen = fn(*args, **kwargs)
                try:
                    while True:
                        with call.entered():
                            try:
                                item = await agen.__anext__()
                            except StopAsyncIteration:
                                break
                        items.append(item)
                        yield item
                except GeneratorExit:
                    with call.entered():
                        await agen.aclose()
                    raise
                finally:
                    call.close(aggregate_items(items))

            return async_gen_wrapper

        if inspect.isgeneratorfunction(fn):
            @functools.wraps(fn)
            def gen_wrapper(*args, **kwargs):
                call = _LoggedCall(options, span_name, fn, args, kwargs)
                call.open()
                items = []
                with call.entered():
                    gen = fn(*args, **kwargs)
                try:
                    while True:
                        with call.entered():
                            item = next(gen, _DONE)
                        if item is _DONE:
                            break
                        items.append(item)
                        yield item
                except GeneratorExit:
                    with call.entered():
                        gen.close()
                    raise
                finally:
                    call.close(aggregate_items(items))

            return gen_wrapper

        if inspect.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def async_wrapper(*args, **kwargs):
                call = _LoggedCall(options, span_name, fn, args, kwargs)
                call.open()
                try:
                    with call.entered():
                        result = await fn(*args, **kwargs)
                except Exception as e:
                    call.close(_error_output(e))
                    raise
                call.close(result)
                return result

            return async_wrapper

        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            call = _LoggedCall(options, span_name, fn, args, kwargs)
            call.open()
            try:
                with call.entered():
                    result = fn(*args, **kwargs)
            except Exception as e:
                call.close(_error_output(e))
                raise
            call.close(result)
            return result

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
