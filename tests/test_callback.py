"""Unit tests for the callback handler."""

from types import SimpleNamespace
from unittest.mock import patch
from uuid import uuid4

from spanlog.callback import SpanLogCallback
from spanlog.models import AgentSpan, LlmSpan, RetrieverSpan, ToolSpan, WorkflowSpan


def chat_result(text, prompt_tokens=5, completion_tokens=2):
    message = SimpleNamespace(type="ai", content=text)
    return SimpleNamespace(
        generations=[[SimpleNamespace(text=text, message=message)]],
        llm_output={
            "token_usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            }
        },
    )


class TestChainCommit:
    """Nodes are committed as one trace when the root run ends."""

    def test_chain_with_llm_and_tool(self, trace_logger, recording_client):
        """A chain run becomes a trace with a workflow holding its children"""
        callback = SpanLogCallback(trace_logger=trace_logger)
        root, llm, tool = uuid4(), uuid4(), uuid4()

        callback.on_chain_start({"name": "QA"}, {"question": "weather?"}, run_id=root)
        callback.on_chat_model_start(
            {},
            [[SimpleNamespace(type="system", content="be brief"), SimpleNamespace(type="human", content="weather?")]],
            run_id=llm,
            parent_run_id=root,
            invocation_params={"model": "gpt-4o", "temperature": 0.2},
        )
        callback.on_llm_new_token("Sun", run_id=llm)
        callback.on_llm_end(chat_result("Sunny"), run_id=llm)
        callback.on_tool_start({"name": "weather"}, "Paris", run_id=tool, parent_run_id=root)
        callback.on_tool_end("22C", run_id=tool)
        callback.on_chain_end({"answer": "Sunny, 22C"}, run_id=root)

        assert len(recording_client.ingested) == 1
        trace = recording_client.ingested[0]["traces"][0]
        assert trace["output"] == '{"answer": "Sunny, 22C"}'
        workflow = trace["spans"][0]
        assert workflow["type"] == "workflow"
        assert workflow["name"] == "QA"
        assert workflow["input"] == '{"question": "weather?"}'
        llm_span, tool_span = workflow["spans"]
        assert llm_span["type"] == "llm"
        assert llm_span["model"] == "gpt-4o"
        assert [message["role"] for message in llm_span["input"]] == ["system", "user"]
        assert llm_span["output"] == {"content": "Sunny", "role": "assistant"}
        assert llm_span["metrics"]["num_input_tokens"] == 5
        assert llm_span["metrics"]["num_total_tokens"] == 7
        assert "time_to_first_token_ns" in llm_span["metrics"]
        assert tool_span == {**tool_span, "type": "tool", "name": "weather", "input": "Paris", "output": "22C"}
        assert trace_logger.current_parent() is None

    def test_no_flush_on_chain_end(self, trace_logger, recording_client):
        """With flushing off the trace stays buffered"""
        callback = SpanLogCallback(trace_logger=trace_logger, flush_on_chain_end=False)
        root = uuid4()

        callback.on_chain_start({"name": "QA"}, "hello", run_id=root)
        callback.on_chain_end("bye", run_id=root)

        assert recording_client.ingested == []
        trace = trace_logger.traces[0]
        assert trace.input == '{"input": "hello"}'
        assert trace.output == "bye"

    def test_workflow_inherits_last_child_output(self, trace_logger):
        """A chain without output takes its last child's output"""
        callback = SpanLogCallback(trace_logger=trace_logger, flush_on_chain_end=False)
        root, tool = uuid4(), uuid4()

        callback.on_chain_start({"name": "QA"}, {"q": "x"}, run_id=root)
        callback.on_tool_start({"name": "search"}, "x", run_id=tool, parent_run_id=root)
        callback.on_tool_end("found", run_id=tool)
        callback.on_chain_end("", run_id=root)

        trace = trace_logger.traces[0]
        assert trace.spans[0].output == "found"
        assert trace.output == "found"

    def test_agent_chains_become_agent_spans(self, trace_logger):
        """LangGraph and agent runs are logged as agent spans"""
        callback = SpanLogCallback(trace_logger=trace_logger, flush_on_chain_end=False)
        root = uuid4()

        callback.on_chain_start({}, {"messages": "hi"}, run_id=root, name="LangGraph")
        callback.on_chain_end({"messages": "done"}, run_id=root)

        span = trace_logger.traces[0].spans[0]
        assert isinstance(span, AgentSpan)
        assert span.name == "Agent"

    def test_hidden_chains_are_skipped(self, trace_logger):
        """Runs tagged hidden are not logged"""
        callback = SpanLogCallback(trace_logger=trace_logger, flush_on_chain_end=False)
        root, hidden, tool = uuid4(), uuid4(), uuid4()

        callback.on_chain_start({"name": "QA"}, {"q": "x"}, run_id=root)
        callback.on_chain_start({"name": "Internal"}, {"q": "x"}, run_id=hidden, parent_run_id=root, tags=["langsmith:hidden"])
        callback.on_tool_start({"name": "search"}, "x", run_id=tool, parent_run_id=root)
        callback.on_tool_end("found", run_id=tool)
        callback.on_chain_end({"a": "found"}, run_id=root)

        workflow = trace_logger.traces[0].spans[0]
        assert [type(span) for span in workflow.spans] == [ToolSpan]

    def test_chain_error(self, trace_logger):
        """Errors end the run with an error output"""
        callback = SpanLogCallback(trace_logger=trace_logger, flush_on_chain_end=False)
        root = uuid4()

        error = RuntimeError("rate limited")
        error.response = SimpleNamespace(status_code=429)
        callback.on_chain_start({"name": "QA"}, {"q": "x"}, run_id=root)
        callback.on_chain_error(error, run_id=root)

        workflow = trace_logger.traces[0].spans[0]
        assert workflow.output == "Error: rate limited"
        assert workflow.status_code == 429

    def test_retriever_documents(self, trace_logger):
        """Retrieved documents keep content and metadata"""
        callback = SpanLogCallback(trace_logger=trace_logger, flush_on_chain_end=False)
        root, retriever = uuid4(), uuid4()
        documents = [SimpleNamespace(page_content="Paris is in France.", metadata={"source": "wiki"})]

        callback.on_chain_start({"name": "RAG"}, {"q": "paris"}, run_id=root)
        callback.on_retriever_start({}, "paris", run_id=retriever, parent_run_id=root)
        callback.on_retriever_end(documents, run_id=retriever)
        callback.on_chain_end({"a": "France"}, run_id=root)

        span = trace_logger.traces[0].spans[0].spans[0]
        assert isinstance(span, RetrieverSpan)
        assert span.output[0].content == "Paris is in France."
        assert span.output[0].metadata == {"source": "wiki"}

    def test_plain_llm_prompts(self, trace_logger):
        """Completion-style LLM runs log prompts as user messages"""
        callback = SpanLogCallback(trace_logger=trace_logger, flush_on_chain_end=False)
        root, llm = uuid4(), uuid4()

        callback.on_chain_start({"name": "QA"}, {"q": "x"}, run_id=root)
        callback.on_llm_start({}, ["Say hi"], run_id=llm, parent_run_id=root, invocation_params={"model_name": "davinci"})
        callback.on_llm_end(SimpleNamespace(generations=[[SimpleNamespace(text="hi")]], llm_output=None), run_id=llm)
        callback.on_chain_end({"a": "hi"}, run_id=root)

        span = trace_logger.traces[0].spans[0].spans[0]
        assert isinstance(span, LlmSpan)
        assert span.model == "davinci"
        assert span.input[0].content == "Say hi"
        assert span.output.content == "hi"

    def test_existing_trace_is_reused(self, trace_logger):
        """With start_new_trace off, runs attach to the open trace"""
        trace = trace_logger.start_trace(input="outer")
        callback = SpanLogCallback(trace_logger=trace_logger, start_new_trace=False, flush_on_chain_end=False)
        root = uuid4()

        callback.on_chain_start({"name": "QA"}, {"q": "x"}, run_id=root)
        callback.on_chain_end({"a": "y"}, run_id=root)

        assert trace_logger.current_parent() is trace
        assert isinstance(trace.spans[0], WorkflowSpan)

    def test_handler_resets_after_commit(self, trace_logger):
        """A second root run produces a second trace"""
        callback = SpanLogCallback(trace_logger=trace_logger, flush_on_chain_end=False)
        for _ in range(2):
            root = uuid4()
            callback.on_chain_start({"name": "QA"}, {"q": "x"}, run_id=root)
            callback.on_chain_end({"a": "y"}, run_id=root)

        assert len(trace_logger.traces) == 2

    def test_unknown_run_end_is_ignored(self, trace_logger):
        """Ending a run that never started does nothing"""
        callback = SpanLogCallback(trace_logger=trace_logger)
        callback.on_tool_end("x", run_id=uuid4())
        assert trace_logger.traces == []

    def test_default_logger_from_registry(self, registry):
        """Without a logger the registry's current one is used"""
        callback = SpanLogCallback()
        assert callback._trace_logger is registry.get_client()


class TestCommitFailure:
    """A commit that fails partway leaves the logger usable."""

    def test_failed_commit_closes_its_frames(self, trace_logger):
        """Frames opened by a failed commit are concluded and the next run is logged"""
        callback = SpanLogCallback(trace_logger=trace_logger, flush_on_chain_end=False)
        root, tool = uuid4(), uuid4()

        callback.on_chain_start({"name": "QA"}, {"q": "x"}, run_id=root)
        callback.on_tool_start({"name": "search"}, "x", run_id=tool, parent_run_id=root)
        callback.on_tool_end("found", run_id=tool)
        with patch.object(trace_logger, "add_tool_span", side_effect=RuntimeError("bad span")):
            callback.on_chain_end({"a": "found"}, run_id=root)

        assert trace_logger.current_parent() is None
        failed = trace_logger.traces[0]
        assert failed.output == "Error: bad span"
        assert failed.spans[0].output == "Error: bad span"

        next_root = uuid4()
        callback.on_chain_start({"name": "QA"}, {"q": "y"}, run_id=next_root)
        callback.on_chain_end({"a": "y"}, run_id=next_root)

        assert len(trace_logger.traces) == 2
        assert trace_logger.traces[1].output == '{"a": "y"}'

    def test_failed_commit_keeps_existing_trace_open(self, trace_logger):
        """Only the frames the commit opened are concluded"""
        trace = trace_logger.start_trace(input="outer")
        callback = SpanLogCallback(trace_logger=trace_logger, start_new_trace=False, flush_on_chain_end=False)
        root, tool = uuid4(), uuid4()

        callback.on_chain_start({"name": "QA"}, {"q": "x"}, run_id=root)
        callback.on_tool_start({"name": "search"}, "x", run_id=tool, parent_run_id=root)
        callback.on_tool_end("found", run_id=tool)
        with patch.object(trace_logger, "add_tool_span", side_effect=RuntimeError("bad span")):
            callback.on_chain_end({"a": "found"}, run_id=root)

        assert trace_logger.current_parent() is trace
        assert trace.output is None
        assert trace.spans[0].output == "Error: bad span"

    def test_tool_names_are_logged_as_schemas(self, trace_logger):
        """Tools given by name are stored as tool schemas"""
        callback = SpanLogCallback(trace_logger=trace_logger, flush_on_chain_end=False)
        root, llm = uuid4(), uuid4()

        callback.on_chain_start({"name": "QA"}, {"q": "x"}, run_id=root)
        callback.on_chat_model_start(
            {},
            [[SimpleNamespace(type="human", content="x")]],
            run_id=llm,
            parent_run_id=root,
            invocation_params={"model": "gpt-4o", "tools": ["search"]},
        )
        callback.on_llm_end(chat_result("done"), run_id=llm)
        callback.on_chain_end({"a": "done"}, run_id=root)

        span = trace_logger.traces[0].spans[0].spans[0]
        assert isinstance(span, LlmSpan)
        assert span.tools == [{"name": "search"}]
