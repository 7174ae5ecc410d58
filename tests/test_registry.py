"""Unit tests for the logger registry and module helpers."""

import pytest
from unittest.mock import patch

import spanlog
from spanlog.context import logging_context
from spanlog.logger import TraceLogger
from spanlog.registry import LoggerRegistry


class TestRegistryKeys:
    """Loggers are cached per project, target and mode."""

    def test_same_key_returns_same_logger(self, registry):
        """Repeated lookups share one logger"""
        first = registry.get(project="p", log_stream="s")
        assert registry.get(project="p", log_stream="s") is first
        assert registry.get(project="p", log_stream="other") is not first
        assert registry.get(project="p", log_stream="s", mode="distributed") is not first

    def test_defaults(self, registry):
        """Nothing configured resolves to the default key"""
        trace_logger = registry.get()
        assert trace_logger.project == "default"
        assert trace_logger.log_stream == "default"
        assert list(registry.get_all_loggers()) == ["default:default:batch"]

    def test_experiment_replaces_log_stream(self, registry):
        """An experiment id takes the log stream's place in the key"""
        trace_logger = registry.get(project="p", log_stream="s", experiment_id="exp-1")
        assert trace_logger.experiment_id == "exp-1"
        assert trace_logger.log_stream is None
        assert "p:exp-1:batch" in registry.get_all_loggers()

    def test_env_fallback(self, registry, monkeypatch):
        """Environment variables are used when nothing is passed"""
        monkeypatch.setenv("TRACER_PROJECT", "env-project")
        monkeypatch.setenv("TRACER_LOG_STREAM_NAME", "env-stream")
        trace_logger = registry.get()
        assert trace_logger.project == "env-project"
        assert trace_logger.log_stream == "env-stream"

    def test_ambient_context_beats_env(self, registry, monkeypatch):
        """A logging_context overrides the environment, explicit values override both"""
        monkeypatch.setenv("TRACER_PROJECT", "env-project")
        with logging_context(project="ctx-project", log_stream="ctx-stream"):
            assert registry.get().project == "ctx-project"
            assert registry.get().log_stream == "ctx-stream"
            assert registry.get(project="explicit").project == "explicit"
        assert registry.get().project == "env-project"

    def test_get_all_loggers_is_a_copy(self, registry):
        """Mutating the returned mapping does not touch the registry"""
        registry.get()
        loggers = registry.get_all_loggers()
        loggers.clear()
        assert len(registry.get_all_loggers()) == 1


class TestRegistryLifecycle:
    """Reset and flush."""

    def test_reset_terminates_and_forgets(self, registry):
        """reset flushes the logger and drops it from the cache"""
        trace_logger = registry.get(project="p")
        with patch.object(trace_logger, "terminate") as mock_terminate:
            registry.reset(project="p")
        mock_terminate.assert_called_once()
        assert registry.get(project="p") is not trace_logger

    def test_reset_unknown_key_is_noop(self, registry):
        """Resetting a key that was never used does nothing"""
        registry.reset(project="missing")
        assert registry.get_all_loggers() == {}

    def test_reset_clears_tracked_client(self, registry):
        """The legacy accessor forgets a reset logger"""
        trace_logger = registry.get(project="p")
        assert registry.get_client() is trace_logger
        registry.reset(project="p")
        assert registry.get_client() is not trace_logger

    def test_reset_all(self, registry):
        """reset_all empties the cache"""
        registry.get(project="a")
        registry.get(project="b")
        registry.reset_all()
        assert registry.get_all_loggers() == {}

    def test_reset_all_closes_owned_transports(self):
        """Loggers dropped by reset_all close the transports they created"""
        registry = LoggerRegistry()
        with patch("spanlog.logger.TraceApiClient") as mock_client_cls:
            trace_logger = registry.get(project="p")
            trace_logger._get_client()
            registry.reset_all()

        mock_client_cls.return_value.close.assert_called_once()
        assert trace_logger._client is None

    def test_flush_keeps_logger(self, registry, recording_client):
        """flush uploads without dropping the logger"""
        trace_logger = registry.get(project="p")
        trace_logger.start_trace(input="q")
        trace_logger.conclude(output="a")

        flushed = registry.flush(project="p")

        assert len(flushed) == 1
        assert len(recording_client.ingested) == 1
        assert registry.get(project="p") is trace_logger

    def test_flush_all(self, registry, recording_client):
        """flush_all uploads every logger's traces"""
        for project in ("a", "b"):
            trace_logger = registry.get(project=project)
            trace_logger.start_trace(input=project)
            trace_logger.conclude(output=project)

        assert len(registry.flush_all()) == 2
        assert sorted(request["project"] for request in recording_client.ingested) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_async_flush_all(self, registry, recording_client):
        """async_flush_all uploads through the async path"""
        trace_logger = registry.get()
        trace_logger.start_trace(input="q")
        trace_logger.conclude(output="a")

        assert len(await registry.async_flush_all()) == 1
        assert len(recording_client.ingested) == 1

    def test_set_client_uses_default_key(self, registry, recording_client):
        """set_client stores the logger under the default key"""
        custom = TraceLogger(client=recording_client)
        registry.set_client(custom)
        assert registry.get() is custom
        assert registry.get_client() is custom


class TestRegistrySingleton:
    """Process-wide instance management."""

    def test_instance_is_shared(self):
        """instance() keeps returning the same registry"""
        LoggerRegistry.reset_instance()
        first = LoggerRegistry.instance()
        assert LoggerRegistry.instance() is first

    def test_set_instance(self, registry):
        """An injected registry becomes the process-wide one"""
        assert LoggerRegistry.instance() is registry


class TestModuleHelpers:
    """Module-level shortcuts over the process-wide registry."""

    def test_get_logger(self, registry):
        """get_logger resolves through the registry"""
        assert spanlog.get_logger(project="p") is registry.get(project="p")

    def test_flush_without_arguments_flushes_all(self, registry):
        """flush() with no target flushes every logger"""
        with patch.object(registry, "flush_all", return_value=[]) as mock_flush_all:
            spanlog.flush()
        mock_flush_all.assert_called_once()

    def test_flush_with_target(self, registry):
        """flush(project=...) flushes one logger"""
        with patch.object(registry, "flush", return_value=[]) as mock_flush:
            spanlog.flush(project="p")
        mock_flush.assert_called_once_with(project="p", log_stream=None, experiment_id=None, mode=None)

    def test_init_with_session_id(self, registry):
        """init attaches an existing session"""
        trace_logger = spanlog.init(project="p", session_id="session-9")
        assert trace_logger.current_session_id() == "session-9"

    def test_init_starts_new_session(self, registry, recording_client):
        """init can open a new session"""
        trace_logger = spanlog.init(project="p", start_new_session=True, session_name="chat")
        assert trace_logger.current_session_id() == "session-1"
        assert recording_client.sessions[0]["name"] == "chat"

    def test_reset_helpers(self, registry):
        """reset and reset_all drop cached loggers"""
        registry.get(project="p")
        registry.get(project="q")
        spanlog.reset(project="p")
        assert list(registry.get_all_loggers()) == ["q:default:batch"]
        spanlog.reset_all()
        assert registry.get_all_loggers() == {}
