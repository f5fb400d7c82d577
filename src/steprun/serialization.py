"""JSON encoding helpers for step payloads.

Errors are serialized in full: type, message, formatted stack, custom
instance attributes and the chained cause, so a failed row carries enough
detail to diagnose the failure without the original process.
"""

from __future__ import annotations

import json
import traceback
from typing import Any

from steprun.errors import StepSerializationError

MAX_CAUSE_DEPTH = 8
_MAX_STACK_CHARS = 20000


def encode_json(value: Any, what: str) -> str | None:
    """Encode a value as JSON text, or None for None.

    Args:
        value: JSON-serializable value.
        what: Label used in the error message ("vars", "output").

    Raises:
        StepSerializationError: If the value cannot be encoded.
    """
    if value is None:
        return None
    try:
        return json.dumps(value, ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise StepSerializationError(f"Step {what} is not JSON-serializable: {e}") from e


def decode_json(text: str | None) -> Any:
    """Decode JSON text from a column; None stays None."""
    if text is None:
        return None
    return json.loads(text)


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value, allow_nan=False)
    except (TypeError, ValueError):
        return repr(value)
    return value


def serialize_error(error: BaseException | Any, _depth: int = 0) -> dict[str, Any]:
    """Serialize an exception into a JSON-safe dict.

    Args:
        error: Exception to serialize. Non-exceptions are recorded by repr.

    Returns:
        Dict with name, message, stack, args, custom attributes and cause.
    """
    if not isinstance(error, BaseException):
        return {"name": type(error).__name__, "message": str(error), "stack": None}

    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    result: dict[str, Any] = {
        "name": type(error).__qualname__,
        "module": type(error).__module__,
        "message": str(error),
        "stack": stack[-_MAX_STACK_CHARS:],
        "args": [_json_safe(arg) for arg in error.args],
    }

    for key, value in getattr(error, "__dict__", {}).items():
        if key.startswith("_") or key in result:
            continue
        result[key] = _json_safe(value)

    cause = error.__cause__
    if cause is None and not error.__suppress_context__:
        cause = error.__context__
    if cause is not None and _depth < MAX_CAUSE_DEPTH:
        result["cause"] = serialize_error(cause, _depth + 1)

    return result
