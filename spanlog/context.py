"""Execution-scoped context for concurrent instrumentation.

Each logical call chain (a thread, an asyncio task, or an explicit ``run``
scope) sees its own context value, so interleaved calls never share a parent
stack. Built on ``contextvars``: asyncio tasks copy the current context when
they are created, which is what keeps ``asyncio.gather`` siblings apart.

Examples
--------
    ```python
    with logging_context(project="chatbot", log_stream="prod"):
        answer_question("hi")   # logged to chatbot/prod

    await asyncio.gather(
        run(LoggingScope(project="a"), handle, req_a),
        run(LoggingScope(project="b"), handle, req_b),
    )
    ```
"""

import inspect
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

_STORE: ContextVar[Optional[Any]] = ContextVar("spanlog_context", default=None)


@dataclass
class LoggingScope:
    """Context value used by the SDK.

    Attributes
    ----------
    project: Optional[str]
        Ambient project name for the logger registry.
    log_stream: Optional[str]
        Ambient log stream name for the logger registry.
    experiment_id: Optional[str]
        Ambient experiment id; takes precedence over the log stream.
    mode: Optional[str]
        Ambient logger mode.
    stacks: Dict[Any, List]
        Open container spans per logger, top of stack last.
    """

    project: Optional[str] = None
    log_stream: Optional[str] = None
    experiment_id: Optional[str] = None
    mode: Optional[str] = None
    stacks: Dict[Any, List] = field(default_factory=dict)

    def stack_for(self, owner: Any) -> Optional[List]:
        return self.stacks.get(owner)

    def child(self, owner: Any, stack: List) -> "LoggingScope":
        """Scope for one nested call.

        Every stack is copied as a new list holding the same span objects, so
        the call attaches spans to the same tree while pushes and pops stay
        private to it. ``owner`` gets a copy of ``stack``.
        """
        stacks = {key: list(value) for key, value in self.stacks.items()}
        stacks[owner] = list(stack)
        return LoggingScope(
            project=self.project,
            log_stream=self.log_stream,
            experiment_id=self.experiment_id,
            mode=self.mode,
            stacks=stacks,
        )


def get_store() -> Optional[Any]:
    """Return the value of the innermost active scope, or None outside any scope."""
    return _STORE.get()


@contextmanager
def scope(value: Any) -> Iterator[Any]:
    """Make ``value`` the current store for the body of the ``with`` block.

    The previous value is restored on exit, also when the body raises.
    """
    token = _STORE.set(value)
    try:
        yield value
    finally:
        _STORE.reset(token)


async def _run_async(value: Any, fn: Callable, args: tuple, kwargs: dict) -> Any:
    with scope(value):
        return await fn(*args, **kwargs)


def run(value: Any, fn: Callable, *args, **kwargs) -> Any:
    """Call ``fn`` so that everything in its dynamic extent sees ``value``.

    For a coroutine function an awaitable is returned and the scope is held
    across every suspension point of that await.
    """
    if inspect.iscoroutinefunction(fn):
        return _run_async(value, fn, args, kwargs)
    with scope(value):
        return fn(*args, **kwargs)


def current_scope() -> LoggingScope:
    """The active ``LoggingScope``, or an empty one outside any scope."""
    value = _STORE.get()
    if isinstance(value, LoggingScope):
        return value
    return LoggingScope()


@contextmanager
def logging_context(
    project: Optional[str] = None,
    log_stream: Optional[str] = None,
    experiment_id: Optional[str] = None,
    mode: Optional[str] = None,
) -> Iterator[LoggingScope]:
    """Set the ambient project / log stream / experiment for the enclosed code.

    Values not given are inherited from the enclosing scope. Open spans of the
    enclosing scope stay visible inside.
    """
    outer = current_scope()
    value = LoggingScope(
        project=project if project is not None else outer.project,
        log_stream=log_stream if log_stream is not None else outer.log_stream,
        experiment_id=experiment_id if experiment_id is not None else outer.experiment_id,
        mode=mode if mode is not None else outer.mode,
        stacks={key: list(stack) for key, stack in outer.stacks.items()},
    )
    with scope(value):
        yield value
