from __future__ import annotations

import logging
import re
from typing import Any

from apitable.collectors.exceptions import StructuralError

logger = logging.getLogger(__name__)

ENVELOPE_KEYS = ["data", "items", "results", "list", "records", "content"]

_PATH_TOKEN = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


def parse_data_path(path: str) -> list[str | int]:
    """
    Split a data path into keys and list indexes.

        "data.items"            -> ["data", "items"]
        "[0].data.rank_list"    -> [0, "data", "rank_list"]
    """
    tokens: list[str | int] = []
    for key, index in _PATH_TOKEN.findall(path):
        tokens.append(int(index) if index else key)
    return tokens


def follow_data_path(payload: Any, path: str) -> Any:
    current = payload
    for token in parse_data_path(path):
        try:
            current = current[token]
        except (KeyError, IndexError, TypeError) as e:
            raise StructuralError(
                f"data_path {path!r} does not resolve at {token!r}"
            ) from e
    return current


def _unwrap_envelope(payload: dict[str, Any], depth: int = 2) -> list[Any] | None:
    for key in ENVELOPE_KEYS:
        value = payload.get(key)
        if isinstance(value, list):
            return value
    if depth > 1:
        for key in ENVELOPE_KEYS:
            value = payload.get(key)
            if isinstance(value, dict):
                found = _unwrap_envelope(value, depth - 1)
                if found is not None:
                    return found
    return None


def extract_records(payload: Any, data_path: str | None = None) -> list[dict[str, Any]]:
    """
    Pull the list of records out of a response body.

    A configured data_path is followed first. Otherwise a bare list is
    used as-is, and an object is searched for a common envelope key
    (data, items, results, ...) at the top level and one level down.

    Raises:
        StructuralError: no list of records could be located.
    """
    if data_path:
        payload = follow_data_path(payload, data_path)

    if isinstance(payload, list):
        records = payload
    elif isinstance(payload, dict):
        records = _unwrap_envelope(payload)
        if records is None:
            raise StructuralError(
                "Response is not a list and has none of the envelope keys "
                f"{ENVELOPE_KEYS}; top-level keys were {sorted(payload)[:20]}"
            )
    elif payload is None:
        return []
    else:
        raise StructuralError(f"Response of type {type(payload).__name__} holds no records")

    non_objects = sum(1 for r in records if not isinstance(r, dict))
    if non_objects:
        logger.warning("Wrapping %d non-object records as {'value': ...}", non_objects)
    return [r if isinstance(r, dict) else {"value": r} for r in records]
