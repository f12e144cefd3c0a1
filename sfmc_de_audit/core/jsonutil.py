"""orjson helpers shared by the cache store and report writer."""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import orjson


def json_dumps(obj: Any) -> bytes:
    """Serialize object to indented JSON bytes using orjson."""
    return orjson.dumps(
        obj,
        option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS,
        default=_json_default,
    )


def json_loads(data: bytes | str) -> Any:
    """Parse JSON bytes or text."""
    return orjson.loads(data)


def _json_default(obj: Any) -> Any:
    """Default serializer for non-standard types."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Path):
        return str(obj)
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Cannot serialize {type(obj)}")
