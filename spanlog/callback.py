"""
Callback handler that turns chain / agent framework events into spans.

The hooks follow LangChain's callback protocol, so an instance can be passed
wherever LangChain accepts a callback handler. LangChain itself is not a
dependency: messages, documents and LLM results are read by attribute.

Events are collected into a tree of nodes keyed by ``run_id``. Nothing is
written to the logger until the first (root) node ends; the whole tree is
then committed as one trace.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID

from .logger import TraceLogger
from .models import MessageRole, StepWithChildSpans
from .registry import LoggerRegistry
from .serialization import convert_to_string_dict, to_string_value

logger = logging.getLogger(__name__)

HIDDEN_TAG = "langsmith:hidden"
AGENT_CHAIN_NAMES = ("LangGraph", "agent")

_MESSAGE_ROLES = {
    "human": MessageRole.user,
    "user": MessageRole.user,
    "ai": MessageRole.assistant,
    "assistant": MessageRole.assistant,
    "system": MessageRole.system,
    "tool": MessageRole.tool,
    "function": MessageRole.function,
}


@dataclass
class Node:
    """One framework run waiting to be committed as a span."""

    node_type: str
    span_params: Dict[str, Any]
    run_id: str
    parent_run_id: Optional[str] = None
    children: List[str] = field(default_factory=list)


def _run_key(run_id: Optional[Any]) -> Optional[str]:
    return str(run_id) if run_id is not None else None


def _error_params(error: BaseException) -> Dict[str, Any]:
    response = getattr(error, "response", None)
    status_code = getattr(response, "status_code", None)
    return {
        "output": f"Error: {error}",
        "status_code": status_code if isinstance(status_code, int) else None,
    }


def _serialize_message(message: Any) -> Dict[str, Any]:
    if isinstance(message, dict):
        return message
    message_type = getattr(message, "type", None)
    role = _MESSAGE_ROLES.get(message_type, MessageRole.user)
    serialized = {"content": to_string_value(getattr(message, "content", "")), "role": role.value}
    tool_call_id = getattr(message, "tool_call_id", None)
    if tool_call_id:
        serialized["tool_call_id"] = tool_call_id
    return serialized


def _serialize_tools(tools: Any) -> Optional[List[Dict[str, Any]]]:
    if not tools:
        return None
    if not isinstance(tools, (list, tuple)):
        tools = [tools]
    return [tool if isinstance(tool, dict) else {"name": to_string_value(tool)} for tool in tools]


def _serialize_document(document: Any) -> Dict[str, Any]:
    if isinstance(document, dict):
        return document
    return {
        "content": getattr(document, "page_content", str(document)),
        "metadata": dict(getattr(document, "metadata", None) or {}),
    }


def _chain_input(inputs: Any) -> Any:
    if isinstance(inputs, str):
        return {"input": inputs}
    if isinstance(inputs, dict):
        return {key: value for key, value in inputs.items() if key and isinstance(value, str) and value}
    if isinstance(inputs, list) and inputs and all(hasattr(item, "page_content") for item in inputs):
        return {str(index): item.page_content for index, item in enumerate(inputs)}
    if hasattr(inputs, "content") and hasattr(inputs, "type"):
        return _serialize_message(inputs)
    return inputs


class SpanLogCallback:
    """Record chain, agent, LLM, tool and retriever runs as a trace.

    Examples
    --------
    ```python
    callback = SpanLogCallback()
    chain.invoke({"question": "What is the capital of France?"}, config={"callbacks": [callback]})
    ```
    """

    name = "SpanLogCallback"
    raise_error = False
    ignore_llm = False
    ignore_chain = False
    ignore_agent = False
    ignore_retriever = False
    ignore_chat_model = False
    ignore_custom_event = True
    ignore_retry = True
    run_inline = True

    def __init__(
        self,
        trace_logger: Optional[TraceLogger] = None,
        start_new_trace: bool = True,
        flush_on_chain_end: bool = True,
    ):
        """Initialize the handler.

        Parameters
        ----------
        trace_logger: Optional[TraceLogger]
            Logger to commit to (default: the registry's current logger).
        start_new_trace: bool
            Wrap each root run in a new trace (default: True). When False the
            run is added under the logger's open parent.
        flush_on_chain_end: bool
            Flush the logger once a root run is committed (default: True).
        """
        self._trace_logger = trace_logger or LoggerRegistry.instance().get_client()
        self._start_new_trace = start_new_trace
        self._flush_on_chain_end = flush_on_chain_end
        self._nodes: Dict[str, Node] = {}
        self._root_run_id: Optional[str] = None

    # ========================================================
    # Node bookkeeping
    # ========================================================

    def _start_node(
        self,
        node_type: str,
        parent_run_id: Optional[Any],
        run_id: Any,
        **params: Any,
    ) -> Node:
        node_id = _run_key(run_id)
        parent_id = _run_key(parent_run_id)
        if node_id in self._nodes:
            logger.debug(f"Node already exists for run_id {node_id}, overwriting...")

        params["start_ns"] = time.perf_counter_ns()
        node = Node(node_type=node_type, span_params=params, run_id=node_id, parent_run_id=parent_id)
        self._nodes[node_id] = node

        if self._root_run_id is None:
            logger.debug(f"Setting root node to {node_id}")
            self._root_run_id = node_id

        if parent_id:
            parent = self._nodes.get(parent_id)
            if parent is not None:
                parent.children.append(node_id)
            else:
                logger.debug(f"Parent node {parent_id} not found for {node_id}")
        return node

    def _end_node(self, run_id: Any, **params: Any) -> None:
        node_id = _run_key(run_id)
        node = self._nodes.get(node_id)
        if node is None:
            logger.warning(f"No node exists for run_id {node_id}")
            return

        start_ns = node.span_params.get("start_ns")
        if start_ns is not None:
            params["duration_ns"] = time.perf_counter_ns() - start_ns
        node.span_params.update(params)

        if node_id == self._root_run_id:
            self._commit()

    def _commit(self) -> None:
        """Write the collected node tree to the logger and reset the handler.

        When writing fails, every frame opened by the commit is concluded so the
        logger's stack is back where it was before.
        """
        trace_logger = self._trace_logger
        depth = len(trace_logger.parent_stack)
        try:
            root = self._nodes.get(self._root_run_id) if self._root_run_id else None
            if root is None:
                logger.warning("Unable to add nodes to trace: root node does not exist")
                return

            started_trace = False
            if self._start_new_trace or trace_logger.current_parent() is None:
                trace_logger.start_trace(
                    input=to_string_value(root.span_params.get("input") or ""),
                    name=root.span_params.get("name"),
                )
                started_trace = True

            self._log_node_tree(root)

            if started_trace:
                trace_logger.conclude(output=self._node_output(root) or "")
                if self._flush_on_chain_end:
                    trace_logger.flush()
        except Exception as e:
            logger.error(f"Unable to commit callback nodes: {e}")
            self._unwind(depth, e)
        finally:
            self._nodes = {}
            self._root_run_id = None

    def _unwind(self, depth: int, error: BaseException) -> None:
        trace_logger = self._trace_logger
        try:
            while len(trace_logger.parent_stack) > depth:
                trace_logger.conclude(output=f"Error: {error}")
        except Exception as e:
            logger.error(f"Unable to close spans left open by a failed commit: {e}")

    def _node_output(self, node: Node) -> Optional[str]:
        """Output of ``node``, else the output of its last committed child."""
        output = node.span_params.get("output")
        if output:
            return output if isinstance(output, str) else to_string_value(output)
        for child_id in reversed(node.children):
            child = self._nodes.get(child_id)
            if child is not None:
                return self._node_output(child)
        return None

    def _log_node_tree(self, node: Node) -> None:
        params = node.span_params
        trace_logger = self._trace_logger
        input_value = params.get("input") or ""
        output_value = params.get("output")
        common = {
            "name": params.get("name"),
            "metadata": params.get("metadata"),
            "tags": params.get("tags"),
            "duration_ns": params.get("duration_ns"),
        }

        container: Optional[StepWithChildSpans] = None
        if node.node_type == "chain":
            container = trace_logger.add_workflow_span(input=input_value, **common)
        elif node.node_type == "agent":
            container = trace_logger.add_agent_span(input=input_value, **common)
        elif node.node_type in ("llm", "chat"):
            trace_logger.add_llm_span(
                input=input_value,
                output=output_value,
                model=params.get("model"),
                temperature=params.get("temperature"),
                tools=params.get("tools"),
                num_input_tokens=params.get("num_input_tokens"),
                num_output_tokens=params.get("num_output_tokens"),
                total_tokens=params.get("total_tokens"),
                time_to_first_token_ns=params.get("time_to_first_token_ns"),
                status_code=params.get("status_code"),
                **common,
            )
        elif node.node_type == "retriever":
            trace_logger.add_retriever_span(
                input=input_value, output=output_value, status_code=params.get("status_code"), **common
            )
        elif node.node_type == "tool":
            trace_logger.add_tool_span(
                input=input_value, output=output_value, status_code=params.get("status_code"), **common
            )
        else:
            logger.warning(f"Unknown node type: {node.node_type}")

        for child_id in node.children:
            child = self._nodes.get(child_id)
            if child is None:
                logger.debug(f"Child node {child_id} not found")
                continue
            self._log_node_tree(child)

        if container is not None:
            trace_logger.conclude(
                output=self._node_output(node) or "",
                duration_ns=params.get("duration_ns"),
                status_code=params.get("status_code"),
            )

    # ========================================================
    # Chains and agents
    # ========================================================

    def on_chain_start(
        self,
        serialized: Optional[Dict[str, Any]],
        inputs: Any,
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        if tags and HIDDEN_TAG in tags:
            return

        node_name = kwargs.get("name") or (serialized or {}).get("name") or "Chain"
        node_type = "chain"
        if node_name in AGENT_CHAIN_NAMES:
            node_type = "agent"
            node_name = "Agent"

        self._start_node(
            node_type,
            parent_run_id,
            run_id,
            name=node_name,
            input=_chain_input(inputs),
            tags=tags,
            metadata=convert_to_string_dict(metadata),
        )

    def on_chain_end(self, outputs: Any, *, run_id: UUID, **kwargs: Any) -> None:
        self._end_node(run_id, output=to_string_value(outputs))

    def on_chain_error(self, error: BaseException, *, run_id: UUID, **kwargs: Any) -> None:
        self._end_node(run_id, **_error_params(error))

    def on_agent_finish(self, finish: Any, *, run_id: UUID, **kwargs: Any) -> None:
        return_values = getattr(finish, "return_values", finish)
        self._end_node(run_id, output=to_string_value(return_values))

    # ========================================================
    # LLMs
    # ========================================================

    def on_llm_start(
        self,
        serialized: Optional[Dict[str, Any]],
        prompts: List[str],
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        invocation_params = kwargs.get("invocation_params") or {}
        self._start_node(
            "llm",
            parent_run_id,
            run_id,
            name="LLM",
            input=[{"content": prompt, "role": MessageRole.user.value} for prompt in prompts],
            tags=tags,
            model=invocation_params.get("model_name") or invocation_params.get("model"),
            temperature=invocation_params.get("temperature"),
            metadata=convert_to_string_dict(metadata),
            time_to_first_token_ns=None,
        )

    def on_chat_model_start(
        self,
        serialized: Optional[Dict[str, Any]],
        messages: List[List[Any]],
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        invocation_params = kwargs.get("invocation_params") or {}
        model = (
            invocation_params.get("model")
            or invocation_params.get("model_name")
            or invocation_params.get("_type")
            or "undefined-type"
        )
        try:
            serialized_messages = [_serialize_message(message) for batch in messages for message in batch]
        except Exception as e:
            logger.warning(f"Failed to serialize chat messages: {e}")
            serialized_messages = str(messages)

        self._start_node(
            "chat",
            parent_run_id,
            run_id,
            name="Chat Model",
            input=serialized_messages,
            tags=tags,
            tools=_serialize_tools(invocation_params.get("tools")),
            model=model,
            temperature=invocation_params.get("temperature", 0.0),
            metadata=convert_to_string_dict(metadata),
            time_to_first_token_ns=None,
        )

    def on_llm_new_token(self, token: str, *, run_id: UUID, **kwargs: Any) -> None:
        node = self._nodes.get(_run_key(run_id))
        if node is None:
            return
        if node.span_params.get("time_to_first_token_ns") is None:
            start_ns = node.span_params.get("start_ns")
            if start_ns is not None:
                node.span_params["time_to_first_token_ns"] = time.perf_counter_ns() - start_ns

    def on_llm_end(self, response: Any, *, run_id: UUID, **kwargs: Any) -> None:
        llm_output = getattr(response, "llm_output", None) or {}
        token_usage = llm_output.get("token_usage") or llm_output.get("tokenUsage") or {}

        try:
            generations = [generation for batch in response.generations for generation in batch]
            first = generations[0]
            message = getattr(first, "message", None)
            output = _serialize_message(message) if message is not None else {
                "content": first.text,
                "role": MessageRole.assistant.value,
            }
        except Exception as e:
            logger.warning(f"Failed to serialize LLM output: {e}")
            output = to_string_value(getattr(response, "generations", response))

        self._end_node(
            run_id,
            output=output,
            num_input_tokens=token_usage.get("prompt_tokens"),
            num_output_tokens=token_usage.get("completion_tokens"),
            total_tokens=token_usage.get("total_tokens"),
        )

    def on_llm_error(self, error: BaseException, *, run_id: UUID, **kwargs: Any) -> None:
        self._end_node(run_id, **_error_params(error))

    # ========================================================
    # Tools and retrievers
    # ========================================================

    def on_tool_start(
        self,
        serialized: Optional[Dict[str, Any]],
        input_str: str,
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        self._start_node(
            "tool",
            parent_run_id,
            run_id,
            name=(serialized or {}).get("name") or "Tool",
            input=input_str,
            tags=tags,
            metadata=convert_to_string_dict(metadata),
        )

    def on_tool_end(self, output: Any, *, run_id: UUID, **kwargs: Any) -> None:
        content = getattr(output, "content", output)
        self._end_node(run_id, output=to_string_value(content))

    def on_tool_error(self, error: BaseException, *, run_id: UUID, **kwargs: Any) -> None:
        self._end_node(run_id, **_error_params(error))

    def on_retriever_start(
        self,
        serialized: Optional[Dict[str, Any]],
        query: str,
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        self._start_node(
            "retriever",
            parent_run_id,
            run_id,
            name="Retriever",
            input=query,
            tags=tags,
            metadata=convert_to_string_dict(metadata),
        )

    def on_retriever_end(self, documents: Any, *, run_id: UUID, **kwargs: Any) -> None:
        try:
            output = [_serialize_document(document) for document in documents]
        except Exception as e:
            logger.warning(f"Failed to serialize retriever output: {e}")
            output = str(documents)
        self._end_node(run_id, output=output)

    def on_retriever_error(self, error: BaseException, *, run_id: UUID, **kwargs: Any) -> None:
        self._end_node(run_id, **_error_params(error))
