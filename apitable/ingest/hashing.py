"""Content hashing for record deduplication.

A record's hash covers every non-system field, so the same payload
fetched twice maps to the same (session_id, data_hash) key no matter
how the source ordered its keys.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from apitable.ingest.schema_inference import SYSTEM_COLUMNS


def content_hash(record: dict[str, Any]) -> str:
    """Return the sha256 hex digest of a record's non-system fields.

    Args:
        record: Raw record as received from the source.

    Returns:
        64-character hex digest.
    """
    payload = {
        key: value
        for key, value in record.items()
        if str(key).lower() not in SYSTEM_COLUMNS
    }
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def canonical_json(value: Any, allow_nan: bool = True) -> str:
    """Serialize with sorted keys and no insignificant whitespace."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=allow_nan,
        default=str,
    )
