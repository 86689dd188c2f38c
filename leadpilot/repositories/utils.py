"""Utility functions for repository operations."""

import json
from typing import Optional, Union


def ensure_json(value: Optional[Union[str, dict, list]]) -> Optional[Union[dict, list]]:
    """
    Normalize JSONB values from database to Python dict/list.

    asyncpg returns JSONB as a str unless a codec is configured on the
    connection; both shapes are accepted here.

    Raises:
        TypeError: If value is an unexpected type
        json.JSONDecodeError: If string is not valid JSON
    """
    if value is None:
        return None

    if isinstance(value, (dict, list)):
        return value

    if isinstance(value, str):
        return json.loads(value)

    raise TypeError(
        f"Expected str, dict, list, or None for JSONB value, got {type(value).__name__}"
    )


def to_jsonb(value: Optional[Union[dict, list]]) -> str:
    """Serialize a value for a ``$n::jsonb`` parameter."""
    return json.dumps(value if value is not None else {}, default=str)


def truncate_error(message: Optional[str], limit: int = 2000) -> Optional[str]:
    if message is None:
        return None
    return message if len(message) <= limit else message[: limit - 3] + "..."
