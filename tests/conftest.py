"""Shared pytest fixtures for spanlog tests."""

import functools

import pytest

from spanlog.errors import TransportError
from spanlog.logger import TraceLogger
from spanlog.registry import LoggerRegistry

TRACER_ENV_VARS = (
    "TRACER_URL",
    "TRACER_API_KEY",
    "TRACER_USERNAME",
    "TRACER_PASSWORD",
    "TRACER_SSO_TOKEN",
    "TRACER_PROJECT",
    "TRACER_PROJECT_NAME",
    "TRACER_LOG_STREAM",
    "TRACER_LOG_STREAM_NAME",
    "TRACER_EXPERIMENT_ID",
    "TRACING_ENABLED",
)


class RecordingClient:
    """Stands in for TraceApiClient and keeps every ingestion request."""

    def __init__(self):
        self.ingested = []
        self.sessions = []
        self.fail_with = None

    def _record(self, traces, project, log_stream=None, experiment_id=None, session_id=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.ingested.append(
            {
                "traces": traces,
                "project": project,
                "log_stream": log_stream,
                "experiment_id": experiment_id,
                "session_id": session_id,
            }
        )

    def ingest_traces(self, traces, project, log_stream=None, experiment_id=None, session_id=None):
        self._record(traces, project, log_stream, experiment_id, session_id)

    async def aingest_traces(self, traces, project, log_stream=None, experiment_id=None, session_id=None):
        self._record(traces, project, log_stream, experiment_id, session_id)

    def create_session(self, project, name=None, previous_session_id=None, external_id=None, **kwargs):
        session_id = f"session-{len(self.sessions) + 1}"
        self.sessions.append({"project": project, "name": name, "external_id": external_id})
        return session_id


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Tests never see TRACER_* values from the developer's shell."""
    for name in TRACER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def recording_client():
    return RecordingClient()


@pytest.fixture
def failing_client():
    client = RecordingClient()
    client.fail_with = TransportError("service unavailable", status_code=503)
    return client


@pytest.fixture
def trace_logger(recording_client):
    return TraceLogger(project="test-project", log_stream="test-stream", client=recording_client)


@pytest.fixture(autouse=True)
def registry(recording_client):
    """Fresh process-wide registry whose loggers upload to the recording client."""
    registry = LoggerRegistry(logger_factory=functools.partial(TraceLogger, client=recording_client))
    LoggerRegistry.set_instance(registry)
    yield registry
    LoggerRegistry.reset_instance()
