"""
Process-wide cache of trace loggers.

Loggers are keyed by ``project:identifier:mode`` where the identifier is the
experiment id when one is set, else the log stream. Values are resolved in
this order: explicit argument, active ``logging_context`` scope, environment,
then ``"default"``.

Configuration
-------------
- TRACER_PROJECT / TRACER_PROJECT_NAME: Project name.
- TRACER_LOG_STREAM / TRACER_LOG_STREAM_NAME: Log stream name.
- TRACER_EXPERIMENT_ID: Experiment id; replaces the log stream when set.
"""

import os
import logging
import threading
from typing import Callable, Dict, List, Optional

from .context import current_scope
from .logger import DEFAULT_MODE, TraceLogger

logger = logging.getLogger(__name__)


class LoggerRegistry:
    """Lazily builds and caches one ``TraceLogger`` per key.

    Examples
    --------
    ```python
    registry = LoggerRegistry.instance()
    trace_logger = registry.get(project="chatbot", log_stream="prod")
    ...
    registry.flush_all()
    ```
    """

    _instance: Optional["LoggerRegistry"] = None
    _lock = threading.Lock()

    def __init__(self, logger_factory: Callable[..., TraceLogger] = TraceLogger):
        self._logger_factory = logger_factory
        self._loggers: Dict[str, TraceLogger] = {}
        self._last_logger: Optional[TraceLogger] = None

    @classmethod
    def instance(cls) -> "LoggerRegistry":
        """Return the process-wide registry, creating it on first use."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def set_instance(cls, registry: "LoggerRegistry") -> None:
        with cls._lock:
            cls._instance = registry

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the process-wide registry without flushing its loggers."""
        with cls._lock:
            cls._instance = None

    # ========================================================
    # Key resolution
    # ========================================================

    @staticmethod
    def _resolve(
        project: Optional[str] = None,
        log_stream: Optional[str] = None,
        experiment_id: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> Dict[str, Optional[str]]:
        ambient = current_scope()
        project = (
            project
            or ambient.project
            or os.getenv("TRACER_PROJECT")
            or os.getenv("TRACER_PROJECT_NAME")
            or "default"
        )
        experiment_id = experiment_id or ambient.experiment_id or os.getenv("TRACER_EXPERIMENT_ID")
        log_stream = (
            log_stream
            or ambient.log_stream
            or os.getenv("TRACER_LOG_STREAM")
            or os.getenv("TRACER_LOG_STREAM_NAME")
            or "default"
        )
        return {
            "project": project,
            "log_stream": None if experiment_id else log_stream,
            "experiment_id": experiment_id,
            "mode": mode or ambient.mode or DEFAULT_MODE,
        }

    @staticmethod
    def _key(resolved: Dict[str, Optional[str]]) -> str:
        identifier = resolved["experiment_id"] or resolved["log_stream"]
        return f"{resolved['project']}:{identifier}:{resolved['mode']}"

    # ========================================================
    # Access
    # ========================================================

    def get(
        self,
        project: Optional[str] = None,
        log_stream: Optional[str] = None,
        experiment_id: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> TraceLogger:
        """Return the logger for the resolved key, creating it if needed."""
        resolved = self._resolve(project, log_stream, experiment_id, mode)
        key = self._key(resolved)

        trace_logger = self._loggers.get(key)
        if trace_logger is None:
            with self._lock:
                trace_logger = self._loggers.get(key)
                if trace_logger is None:
                    trace_logger = self._logger_factory(**resolved)
                    self._loggers[key] = trace_logger
                    logger.debug(f"Created logger for key {key}")

        self._last_logger = trace_logger
        return trace_logger

    def get_client(self) -> TraceLogger:
        """Legacy accessor: the most recently used logger, else the default one."""
        if self._last_logger is not None:
            return self._last_logger
        return self.get()

    def set_client(self, trace_logger: TraceLogger) -> None:
        """Legacy: store ``trace_logger`` under the default key."""
        key = self._key(self._resolve())
        self._loggers[key] = trace_logger
        self._last_logger = trace_logger

    def get_all_loggers(self) -> Dict[str, TraceLogger]:
        """Copy of the key -> logger mapping."""
        return dict(self._loggers)

    # ========================================================
    # Lifecycle
    # ========================================================

    def reset(
        self,
        project: Optional[str] = None,
        log_stream: Optional[str] = None,
        experiment_id: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> None:
        """Terminate and forget the logger for the resolved key, if any."""
        key = self._key(self._resolve(project, log_stream, experiment_id, mode))
        trace_logger = self._loggers.pop(key, None)
        if trace_logger is None:
            return
        trace_logger.terminate()
        if self._last_logger is trace_logger:
            self._last_logger = None

    def reset_all(self) -> None:
        """Terminate and forget every logger."""
        loggers = list(self._loggers.values())
        self._loggers.clear()
        for trace_logger in loggers:
            trace_logger.terminate()
        self._last_logger = None

    def flush(
        self,
        project: Optional[str] = None,
        log_stream: Optional[str] = None,
        experiment_id: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> list:
        """Flush the logger for the resolved key, keeping it cached."""
        key = self._key(self._resolve(project, log_stream, experiment_id, mode))
        trace_logger = self._loggers.get(key)
        if trace_logger is None:
            logger.warning(f"No logger registered for key {key}, nothing to flush.")
            return []
        return trace_logger.flush()

    def flush_all(self) -> List:
        """Flush every cached logger and return all flushed traces."""
        flushed = []
        for trace_logger in list(self._loggers.values()):
            flushed.extend(trace_logger.flush())
        return flushed

    async def async_flush_all(self) -> List:
        flushed = []
        for trace_logger in list(self._loggers.values()):
            flushed.extend(await trace_logger.async_flush())
        return flushed


# ========================================================
# Module helpers
# ========================================================

def init(
    project: Optional[str] = None,
    log_stream: Optional[str] = None,
    experiment_id: Optional[str] = None,
    session_id: Optional[str] = None,
    start_new_session: bool = False,
    session_name: Optional[str] = None,
    previous_session_id: Optional[str] = None,
    external_id: Optional[str] = None,
) -> TraceLogger:
    """Create (or fetch) the logger for the given target, optionally opening a session.

    Examples
    --------
    ```python
    import spanlog

    spanlog.init(project="chatbot", log_stream="prod", start_new_session=True)
    ```
    """
    trace_logger = LoggerRegistry.instance().get(
        project=project, log_stream=log_stream, experiment_id=experiment_id
    )
    if session_id:
        trace_logger.set_session_id(session_id)
    elif start_new_session:
        trace_logger.start_session(
            name=session_name,
            previous_session_id=previous_session_id,
            external_id=external_id,
        )
    return trace_logger


def get_logger(
    project: Optional[str] = None,
    log_stream: Optional[str] = None,
    experiment_id: Optional[str] = None,
    mode: Optional[str] = None,
) -> TraceLogger:
    return LoggerRegistry.instance().get(
        project=project, log_stream=log_stream, experiment_id=experiment_id, mode=mode
    )


def flush(
    project: Optional[str] = None,
    log_stream: Optional[str] = None,
    experiment_id: Optional[str] = None,
    mode: Optional[str] = None,
) -> List:
    """Flush one logger, or every logger when called without arguments."""
    registry = LoggerRegistry.instance()
    if project is None and log_stream is None and experiment_id is None and mode is None:
        return registry.flush_all()
    return registry.flush(
        project=project, log_stream=log_stream, experiment_id=experiment_id, mode=mode
    )


def flush_all() -> List:
    return LoggerRegistry.instance().flush_all()


def reset(
    project: Optional[str] = None,
    log_stream: Optional[str] = None,
    experiment_id: Optional[str] = None,
    mode: Optional[str] = None,
) -> None:
    LoggerRegistry.instance().reset(
        project=project, log_stream=log_stream, experiment_id=experiment_id, mode=mode
    )


def reset_all() -> None:
    LoggerRegistry.instance().reset_all()
