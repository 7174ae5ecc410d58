"""
Logging for OpenAI chat completions and responses.

``wrap_openai`` swaps ``client.chat.completions.create`` and, when the client
has one, ``client.responses.create`` on a client instance for logged versions.
``log_chat_completion`` and ``log_response`` wrap any callable with the same
signature. The OpenAI SDK is not imported: requests are read as keyword
arguments and responses by attribute (or key, for plain dicts).

Every call records one LLM span. When no trace is open, the call starts its
own trace and concludes it once the response (or the whole stream) is in.
Reasoning summaries and built-in tool calls of the Responses API are logged
as events on the LLM span.

Examples
--------
    ```python
    from openai import OpenAI
    from spanlog import wrap_openai

    client = wrap_openai(OpenAI())
    client.chat.completions.create(
        model="gpt-4o",
        messages=[{"role": "user", "content": "Say hello world!"}],
    )
    client.responses.create(model="o4-mini", input="Say hello world!")
    ```
"""

import functools
import inspect
import logging
import time
from datetime import datetime, UTC
from typing import Any, Callable, Dict, List, Optional

from . import context
from .logger import TraceLogger
from .models import Event, EventStatus, EventType, MessageRole
from .registry import LoggerRegistry
from .serialization import to_json, to_string_value

logger = logging.getLogger(__name__)

SPAN_NAME = "openai-client-generation"
RESPONSES_SPAN_NAME = "openai-responses-generation"

# Responses API output items logged as events, by item type
EVENT_ITEM_TYPES = {
    "web_search_call": EventType.internal_tool_call,
    "file_search_call": EventType.internal_tool_call,
    "code_interpreter_call": EventType.internal_tool_call,
    "computer_call": EventType.internal_tool_call,
    "local_shell_call": EventType.internal_tool_call,
    "custom_tool_call": EventType.internal_tool_call,
    "image_generation_call": EventType.image_generation,
    "mcp_call": EventType.mcp_call,
    "mcp_list_tools": EventType.mcp_list_tools,
    "mcp_approval_request": EventType.mcp_approval_request,
}

RESPONSE_DONE_EVENTS = ("response.completed", "response.incomplete", "response.failed")


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _to_plain(obj: Any) -> Any:
    if hasattr(obj, "model_dump"):
        return obj.model_dump(exclude_none=True)
    return obj


def _usage_kwargs(usage: Any) -> Dict[str, Optional[int]]:
    """Token counts from chat completion (prompt/completion) or responses (input/output) usage."""
    if usage is None:
        return {}
    input_tokens = _get(usage, "input_tokens", _get(usage, "prompt_tokens"))
    output_tokens = _get(usage, "output_tokens", _get(usage, "completion_tokens"))
    input_details = _get(usage, "input_tokens_details") or _get(usage, "prompt_tokens_details")
    output_details = _get(usage, "output_tokens_details") or _get(usage, "completion_tokens_details")
    return {
        "num_input_tokens": input_tokens,
        "num_output_tokens": output_tokens,
        "total_tokens": _get(usage, "total_tokens"),
        "num_reasoning_tokens": _get(output_details, "reasoning_tokens"),
        "num_cached_input_tokens": _get(input_details, "cached_tokens"),
    }


class _Generation:
    """Bookkeeping for one model call.

    The call runs in a private scope; streams re-enter the same scope when
    they finish so the span lands under the parent that was open at call time.
    Nothing is logged once that parent's trace has been flushed.
    """

    def __init__(
        self,
        trace_logger: Optional[TraceLogger],
        request: Dict[str, Any],
        span_name: str = SPAN_NAME,
        input_key: str = "messages",
    ):
        self.request = request
        self.trace_logger = trace_logger
        self.span_name = span_name
        self.input_key = input_key
        self.scope: Optional[context.LoggingScope] = None
        self.started_trace = False
        self.created_at = datetime.now(UTC)
        self.start_ns = time.perf_counter_ns()

    def begin(self) -> None:
        try:
            if self.trace_logger is None:
                self.trace_logger = LoggerRegistry.instance().get_client()
            self.scope = context.current_scope().child(self.trace_logger, self.trace_logger.parent_stack)
            with context.scope(self.scope):
                if self.trace_logger.current_parent() is None:
                    self.trace_logger.start_trace(
                        input=self.request.get(self.input_key) or "",
                        name=self.span_name,
                        created_at=self.created_at,
                    )
                    self.started_trace = True
        except Exception as e:
            logger.warning(f"Unable to start logging {self.span_name}: {e}")
            self.scope = None

    def _parent_is_open(self) -> bool:
        parent = self.trace_logger.current_parent()
        if parent is None or not self.trace_logger.is_pending(parent):
            logger.warning(f"The trace of {self.span_name} was flushed before the call finished, it is not logged.")
            return False
        return True

    def fail(self, error: BaseException) -> None:
        if self.scope is None:
            return
        duration_ns = time.perf_counter_ns() - self.start_ns
        try:
            with context.scope(self.scope):
                if self.started_trace and self._parent_is_open():
                    self.trace_logger.conclude(output=f"Error: {error}", duration_ns=duration_ns)
        except Exception as e:
            logger.warning(f"Unable to record {self.span_name} error: {e}")

    def finish(
        self,
        output: Any,
        usage: Any = None,
        finish_reason: Optional[str] = None,
        model: Optional[str] = None,
        time_to_first_token_ns: Optional[int] = None,
        input: Any = None,
        events: Optional[List[Event]] = None,
        tool_spans: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        if self.scope is None:
            return
        duration_ns = time.perf_counter_ns() - self.start_ns
        try:
            with context.scope(self.scope):
                if not self._parent_is_open():
                    return
                for tool_span in tool_spans or []:
                    self.trace_logger.add_tool_span(**tool_span)
                self.trace_logger.add_llm_span(
                    input=self.request.get(self.input_key) if input is None else input,
                    output=output,
                    name=self.span_name,
                    created_at=self.created_at,
                    model=model or self.request.get("model") or "unknown",
                    tools=self.request.get("tools"),
                    temperature=self.request.get("temperature"),
                    duration_ns=duration_ns,
                    metadata=self.request.get("metadata"),
                    status_code=200,
                    finish_reason=finish_reason,
                    time_to_first_token_ns=time_to_first_token_ns,
                    events=events or None,
                    **_usage_kwargs(usage),
                )
                if self.started_trace:
                    self.trace_logger.conclude(output=output, duration_ns=duration_ns)
        except Exception as e:
            logger.warning(f"Unable to log {self.span_name}: {e}")

    def finish_chat_completion(self, response: Any) -> None:
        choices = _get(response, "choices") or []
        output = [_to_plain(_get(choice, "message")) for choice in choices]
        finish_reason = _get(choices[0], "finish_reason") if choices else None
        self.finish(
            output,
            usage=_get(response, "usage"),
            finish_reason=finish_reason,
            model=_get(response, "model"),
        )

    def finish_response(self, response: Any, time_to_first_token_ns: Optional[int] = None) -> None:
        items = [_to_plain(item) for item in _get(response, "output") or []]
        output, events = _consolidate_output_items(items)
        input_items = self.request.get("input")
        self.finish(
            output,
            usage=_get(response, "usage"),
            finish_reason=_get(response, "status"),
            model=_get(response, "model"),
            time_to_first_token_ns=time_to_first_token_ns,
            input=_response_input_messages(input_items),
            events=events,
            tool_spans=_function_call_output_spans(input_items),
        )


# ========================================================
# Responses API items
# ========================================================

def _text_parts(value: Any) -> List[str]:
    """Text of a string or of a list of ``{"text": ...}`` parts."""
    if isinstance(value, str):
        return [value] if value else []
    parts = []
    for part in value or []:
        text = _get(part, "text") if not isinstance(part, str) else part
        if text:
            parts.append(text)
    return parts


def _response_input_messages(input_items: Any) -> List[Dict[str, Any]]:
    """Request ``input`` as chat messages."""
    if input_items is None:
        return []
    if not isinstance(input_items, list):
        input_items = [input_items]

    messages = []
    for item in input_items:
        item = _to_plain(item)
        if isinstance(item, str):
            if item:
                messages.append({"role": MessageRole.user.value, "content": item})
            continue
        item_type = _get(item, "type")
        if item_type in (None, "message"):
            role = _get(item, "role")
            messages.append({
                "role": role if role in MessageRole._value2member_map_ else MessageRole.user.value,
                "content": "".join(_text_parts(_get(item, "content"))),
            })
        elif item_type == "function_call":
            messages.append({
                "role": MessageRole.assistant.value,
                "content": "",
                "tool_calls": [{
                    "id": str(_get(item, "call_id") or _get(item, "id") or ""),
                    "function": {"name": _get(item, "name") or "", "arguments": _get(item, "arguments") or ""},
                }],
            })
        elif item_type == "function_call_output":
            message = {"role": MessageRole.tool.value, "content": to_string_value(_get(item, "output") or "")}
            if _get(item, "call_id"):
                message["tool_call_id"] = _get(item, "call_id")
            messages.append(message)
        else:
            messages.append({"role": MessageRole.user.value, "content": to_json(item)})
    return messages


def _function_call_output_spans(input_items: Any) -> List[Dict[str, Any]]:
    """Tool spans for function results passed back in the request ``input``."""
    if not isinstance(input_items, list):
        return []
    items = [_to_plain(item) for item in input_items]
    calls = {
        str(_get(item, "call_id") or _get(item, "id") or ""): item
        for item in items
        if _get(item, "type") == "function_call"
    }
    spans = []
    for item in items:
        if _get(item, "type") != "function_call_output":
            continue
        call_id = str(_get(item, "call_id") or "")
        call = calls.get(call_id)
        if _get(item, "output") is None and call is None:
            continue
        name = _get(call, "name") or "function_call"
        spans.append({
            "input": {"name": name, "arguments": _get(call, "arguments") or "", "call_id": call_id},
            "output": _get(item, "output") or "",
            "name": name,
            "tool_call_id": call_id or None,
            "metadata": {"tool_id": call_id, "tool_type": "function_call"},
        })
    return spans


def _item_event(item: Any) -> Optional[Event]:
    """Event for a built-in tool output item, or None for other item types."""
    event_type = EVENT_ITEM_TYPES.get(_get(item, "type"))
    if event_type is None:
        return None
    status = _get(item, "status")
    fields = {
        "tool_name": _get(item, "name") or _get(item, "type"),
        "arguments": _get(item, "arguments"),
        "server_label": _get(item, "server_label"),
        "output": _get(item, "output"),
    }
    return Event(
        type=event_type,
        id=_get(item, "id"),
        status=status if status in EventStatus._value2member_map_ else None,
        error_message=_get(item, "error"),
        **{key: value for key, value in fields.items() if value is not None},
    )


def _consolidate_output_items(items: List[Any]) -> tuple:
    """Assistant message and events for the output items of one response."""
    content: List[str] = []
    tool_calls: List[Dict[str, Any]] = []
    events: List[Event] = []
    for item in items:
        item_type = _get(item, "type")
        if item_type == "message":
            content.extend(_text_parts(_get(item, "content")))
        elif item_type == "reasoning":
            texts = _text_parts(_get(item, "summary")) or _text_parts(_get(item, "content"))
            events.extend(
                Event(type=EventType.reasoning, id=_get(item, "id"), content=text) for text in texts
            )
        elif item_type == "function_call":
            tool_calls.append({
                "id": str(_get(item, "id") or _get(item, "call_id") or ""),
                "function": {"name": _get(item, "name") or "", "arguments": _get(item, "arguments") or ""},
            })
        else:
            event = _item_event(item)
            if event is not None:
                events.append(event)

    output: Dict[str, Any] = {"role": MessageRole.assistant.value, "content": "".join(content)}
    if tool_calls:
        output["tool_calls"] = tool_calls
    return output, events


# ========================================================
# Streams
# ========================================================

class _ChatStreamAggregator:
    """Rebuilds the assistant message from streamed chunk deltas."""

    def __init__(self, generation: _Generation):
        self.generation = generation
        self.content: List[str] = []
        self.role = "assistant"
        self.tool_calls: Dict[int, Dict[str, Any]] = {}
        self.usage = None
        self.model = None
        self.finish_reason = None
        self.first_token_ns: Optional[int] = None
        self.finished = False

    def add(self, chunk: Any) -> None:
        if self.first_token_ns is None:
            self.first_token_ns = time.perf_counter_ns() - self.generation.start_ns
        self.model = _get(chunk, "model") or self.model
        if _get(chunk, "usage") is not None:
            self.usage = _get(chunk, "usage")

        choices = _get(chunk, "choices") or []
        if not choices:
            return
        self.finish_reason = _get(choices[0], "finish_reason") or self.finish_reason
        delta = _get(choices[0], "delta")
        if delta is None:
            return

        if _get(delta, "content"):
            self.content.append(_get(delta, "content"))
        if _get(delta, "role"):
            self.role = _get(delta, "role")

        for tool_call in _get(delta, "tool_calls") or []:
            index = _get(tool_call, "index", 0)
            function = _get(tool_call, "function")
            current = self.tool_calls.get(index)
            if current is None:
                self.tool_calls[index] = {
                    "id": _get(tool_call, "id") or f"tool_{index}",
                    "function": {
                        "name": _get(function, "name") or "",
                        "arguments": _get(function, "arguments") or "",
                    },
                }
                continue
            if _get(function, "name"):
                current["function"]["name"] = _get(function, "name")
            if _get(function, "arguments"):
                current["function"]["arguments"] += _get(function, "arguments")

        # Legacy function_call deltas are folded into the first tool call
        function_call = _get(delta, "function_call")
        if function_call is not None:
            current = self.tool_calls.setdefault(
                0, {"id": "function_call_0", "function": {"name": "", "arguments": ""}}
            )
            if _get(function_call, "name"):
                current["function"]["name"] = _get(function_call, "name")
            if _get(function_call, "arguments"):
                current["function"]["arguments"] += _get(function_call, "arguments")

    def output(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": self.role, "content": "".join(self.content)}
        if self.tool_calls:
            message["tool_calls"] = [self.tool_calls[index] for index in sorted(self.tool_calls)]
        return message

    def finalize(self) -> None:
        if self.finished:
            return
        self.finished = True
        self.generation.finish(
            self.output(),
            usage=self.usage,
            finish_reason=self.finish_reason,
            model=self.model,
            time_to_first_token_ns=self.first_token_ns,
        )


class _ResponseStreamAggregator:
    """Keeps the final response of a Responses API event stream."""

    def __init__(self, generation: _Generation):
        self.generation = generation
        self.response = None
        self.text: List[str] = []
        self.first_token_ns: Optional[int] = None
        self.finished = False

    def add(self, event: Any) -> None:
        event_type = _get(event, "type")
        if event_type == "response.output_text.delta":
            if self.first_token_ns is None:
                self.first_token_ns = time.perf_counter_ns() - self.generation.start_ns
            self.text.append(_get(event, "delta") or "")
        elif event_type in RESPONSE_DONE_EVENTS:
            self.response = _get(event, "response")

    def finalize(self) -> None:
        if self.finished:
            return
        self.finished = True
        if self.response is not None:
            self.generation.finish_response(self.response, time_to_first_token_ns=self.first_token_ns)
            return
        # Stream ended before the final response event
        self.generation.finish(
            {"role": MessageRole.assistant.value, "content": "".join(self.text)},
            input=_response_input_messages(self.generation.request.get("input")),
            time_to_first_token_ns=self.first_token_ns,
        )


class StreamWrapper:
    """Iterates a sync stream and logs the aggregated output when it ends."""

    def __init__(self, stream: Any, aggregator: Any):
        self._stream = stream
        self._iterator = iter(stream)
        self._aggregator = aggregator

    def __iter__(self):
        return self

    def __next__(self):
        try:
            chunk = next(self._iterator)
        except StopIteration:
            self._aggregator.finalize()
            raise
        except Exception:
            self._aggregator.finalize()
            raise
        self._aggregator.add(chunk)
        return chunk

    def close(self) -> None:
        self._aggregator.finalize()
        if hasattr(self._stream, "close"):
            self._stream.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._stream, name)


class AsyncStreamWrapper:
    """Async version of ``StreamWrapper``."""

    def __init__(self, stream: Any, aggregator: Any):
        self._stream = stream
        self._iterator = stream.__aiter__()
        self._aggregator = aggregator

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            chunk = await self._iterator.__anext__()
        except StopAsyncIteration:
            self._aggregator.finalize()
            raise
        except Exception:
            self._aggregator.finalize()
            raise
        self._aggregator.add(chunk)
        return chunk

    async def aclose(self) -> None:
        self._aggregator.finalize()
        if hasattr(self._stream, "close"):
            result = self._stream.close()
            if inspect.isawaitable(result):
                await result

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._stream, name)


# ========================================================
# Wrappers
# ========================================================

def _log_create(
    create: Callable,
    trace_logger: Optional[TraceLogger],
    span_name: str,
    input_key: str,
    finish: Callable[[_Generation, Any], None],
    aggregator_factory: Callable[[_Generation], Any],
) -> Callable:
    def _handle(generation: _Generation, response: Any, stream: bool) -> Any:
        if stream:
            aggregator = aggregator_factory(generation)
            if hasattr(response, "__aiter__"):
                return AsyncStreamWrapper(response, aggregator)
            return StreamWrapper(response, aggregator)
        finish(generation, response)
        return response

    async def _finish_async(generation: _Generation, pending: Any, stream: bool) -> Any:
        try:
            response = await pending
        except Exception as e:
            generation.fail(e)
            raise
        return _handle(generation, response, stream)

    @functools.wraps(create)
    def wrapped_create(*args, **kwargs):
        generation = _Generation(trace_logger, kwargs, span_name=span_name, input_key=input_key)
        generation.begin()
        try:
            result = create(*args, **kwargs)
        except Exception as e:
            generation.fail(e)
            raise
        stream = bool(kwargs.get("stream"))
        if inspect.isawaitable(result):
            return _finish_async(generation, result, stream)
        return _handle(generation, result, stream)

    return wrapped_create


def log_chat_completion(create: Callable, trace_logger: Optional[TraceLogger] = None) -> Callable:
    """Wrap a chat-completion ``create`` callable so every call is logged.

    Parameters
    ----------
    create: Callable
        Sync or async callable taking OpenAI chat completion keyword arguments.
    trace_logger: Optional[TraceLogger]
        Logger to record to (default: the registry's current logger).
    """
    return _log_create(
        create,
        trace_logger,
        SPAN_NAME,
        "messages",
        _Generation.finish_chat_completion,
        _ChatStreamAggregator,
    )


def log_response(create: Callable, trace_logger: Optional[TraceLogger] = None) -> Callable:
    """Wrap a Responses API ``create`` callable so every call is logged.

    The LLM span carries the consolidated assistant message, reasoning
    summaries and built-in tool calls as events, and a tool span for every
    function result passed back in ``input``.

    Parameters
    ----------
    create: Callable
        Sync or async callable taking OpenAI responses keyword arguments.
    trace_logger: Optional[TraceLogger]
        Logger to record to (default: the registry's current logger).
    """
    return _log_create(
        create,
        trace_logger,
        RESPONSES_SPAN_NAME,
        "input",
        _Generation.finish_response,
        _ResponseStreamAggregator,
    )


def wrap_openai(client: Any, trace_logger: Optional[TraceLogger] = None) -> Any:
    """Log every ``chat.completions.create`` and ``responses.create`` call; returns the same client.

    Works for both ``OpenAI`` and ``AsyncOpenAI`` clients.
    """
    completions = client.chat.completions
    completions.create = log_chat_completion(completions.create, trace_logger=trace_logger)
    responses = getattr(client, "responses", None)
    if responses is not None and hasattr(responses, "create"):
        responses.create = log_response(responses.create, trace_logger=trace_logger)
    return client