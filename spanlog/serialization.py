"""Helpers that turn arbitrary Python values into loggable strings.

None of these helpers raise on odd input: a value that cannot be JSON encoded
falls back to ``str()`` and finally to a placeholder, so instrumentation never
breaks the code it observes.
"""

import dataclasses
import inspect
import json
import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

COMPLEX_OBJECT_PLACEHOLDER = "[Complex Object]"


def _json_default(value: Any) -> Any:
    """Fallback encoder for json.dumps."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if callable(value):
        return "[Function]"
    return str(value)


def to_json(value: Any) -> str:
    """JSON encode a value, raising on circular structures."""
    return json.dumps(value, default=_json_default, ensure_ascii=False)


def to_string_value(value: Any) -> str:
    """Convert any value to a string.

    Strings are returned unchanged, everything else is JSON encoded. Values that
    cannot be encoded (e.g. circular structures) degrade to ``str(value)`` and,
    if even that fails, to a fixed placeholder.
    """
    if isinstance(value, str):
        return value
    try:
        return to_json(value)
    except (TypeError, ValueError, RecursionError) as e:
        logger.warning(f"Unable to JSON encode value of type {type(value).__name__}: {e}")
    try:
        return str(value)
    except Exception:
        return COMPLEX_OBJECT_PLACEHOLDER


def convert_to_string_dict(metadata: Optional[Dict[Any, Any]]) -> Dict[str, str]:
    """Stringify every key and value of a metadata mapping.

    ``None`` values become empty strings, structured values are JSON encoded.
    """
    if not metadata:
        return {}
    result = {}
    for key, value in metadata.items():
        if value is None:
            result[str(key)] = ""
        else:
            result[str(key)] = to_string_value(value)
    return result


def args_to_dict(
    func: Callable,
    args: Iterable[Any],
    kwargs: Dict[str, Any],
) -> Dict[str, str]:
    """Map a call's arguments onto parameter names, defaults included.

    Falls back to positional indices when the signature cannot be bound
    (builtins, mismatched calls).
    """
    args = tuple(args)
    try:
        signature = inspect.signature(func)
        bound = signature.bind(*args, **kwargs)
        bound.apply_defaults()
    except (TypeError, ValueError):
        result = {str(index): to_string_value(arg) for index, arg in enumerate(args)}
        result.update({key: to_string_value(value) for key, value in kwargs.items()})
        return result

    result = {}
    for name, value in bound.arguments.items():
        if name in ("self", "cls"):
            continue
        # Flatten **kwargs so each keyword shows up under its own name
        if signature.parameters[name].kind == inspect.Parameter.VAR_KEYWORD:
            for key, item in value.items():
                result[key] = to_string_value(item)
        else:
            result[name] = to_string_value(value)
    return result


def aggregate_items(items: Iterable[Any]) -> str:
    """Collapse the values yielded by a generator into a single output string."""
    items = list(items)
    if all(isinstance(item, str) for item in items):
        return "".join(items)
    return to_string_value(items)
