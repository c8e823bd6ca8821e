"""Type-preserving JSON serialization for checkpoint payloads.

Checkpoints hold operation keys (usually ``(x, y)`` tuples) and the
session's last checkpoint time. Plain json.dumps() turns tuples into lists,
which breaks key equality after a resume, and cannot encode datetimes at all.

The solution: collision-safe type envelopes with ``__gridpush_type__`` and
``__gridpush_value__`` keys. User dicts that coincidentally contain the
reserved key are escaped before encoding, so they are never mistaken for an
envelope on the way back.

NaN/Infinity are rejected: a checkpoint must round-trip exactly.
"""

from __future__ import annotations

import json
import math
from datetime import UTC, datetime
from typing import Any

_ENVELOPE_TYPE_KEY = "__gridpush_type__"
_ENVELOPE_VALUE_KEY = "__gridpush_value__"


class CheckpointEncoder(json.JSONEncoder):
    """JSON encoder that preserves datetime with collision-safe type envelopes.

    Encodes datetime as {"__gridpush_type__": "datetime", "__gridpush_value__": "iso_string"}.
    """

    def default(self, obj: Any) -> Any:
        """Encode non-standard types.

        Raises:
            TypeError: If object cannot be serialized
        """
        if isinstance(obj, datetime):
            if obj.tzinfo is None:
                obj = obj.replace(tzinfo=UTC)
            return {
                _ENVELOPE_TYPE_KEY: "datetime",
                _ENVELOPE_VALUE_KEY: obj.isoformat(),
            }

        return super().default(obj)


def _reject_nan_infinity(obj: Any) -> Any:
    """Recursively check for NaN/Infinity in data structure.

    Raises:
        ValueError: If NaN or Infinity found
    """
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise ValueError(f"Cannot serialize non-finite float: {obj}. Use None for missing values, not NaN/Infinity.")
    elif isinstance(obj, dict):
        for k, v in obj.items():
            _reject_nan_infinity(k)
            _reject_nan_infinity(v)
    elif isinstance(obj, (list, tuple)):
        for v in obj:
            _reject_nan_infinity(v)
    return obj


def _wrap_types(obj: Any) -> Any:
    """Recursively wrap tuples, non-string-keyed dicts and dicts holding the reserved key.

    json encodes tuples natively as arrays without consulting the encoder's
    default(), so they are wrapped here, before encoding. It would also turn
    ``{1: "a"}`` into ``{"1": "a"}``; such dicts travel as key/value pairs.
    """
    if isinstance(obj, datetime):
        return obj
    if isinstance(obj, tuple):
        return {
            _ENVELOPE_TYPE_KEY: "tuple",
            _ENVELOPE_VALUE_KEY: [_wrap_types(v) for v in obj],
        }
    if isinstance(obj, dict):
        if not all(isinstance(k, str) for k in obj):
            # JSON object keys are strings only; keep the pairs instead.
            return {
                _ENVELOPE_TYPE_KEY: "dict_items",
                _ENVELOPE_VALUE_KEY: [[_wrap_types(k), _wrap_types(v)] for k, v in obj.items()],
            }
        wrapped = {k: _wrap_types(v) for k, v in obj.items()}
        if _ENVELOPE_TYPE_KEY in wrapped:
            return {
                _ENVELOPE_TYPE_KEY: "escaped_dict",
                _ENVELOPE_VALUE_KEY: wrapped,
            }
        return wrapped
    if isinstance(obj, list):
        return [_wrap_types(v) for v in obj]
    return obj


def checkpoint_dumps(obj: Any) -> str:
    """Serialize object to JSON with type preservation.

    Args:
        obj: Data structure to serialize (typically Session.to_dict())

    Returns:
        JSON string with type envelopes for datetime and tuple values

    Raises:
        ValueError: If data contains NaN or Infinity
        TypeError: If data contains non-serializable types
    """
    _reject_nan_infinity(obj)
    return json.dumps(_wrap_types(obj), cls=CheckpointEncoder, allow_nan=False)


def _restore_types(obj: Any) -> Any:
    """Recursively restore type-tagged values.

    Handles:
    - {"__gridpush_type__": "datetime", "__gridpush_value__": iso_string}
    - {"__gridpush_type__": "tuple", "__gridpush_value__": [...]}
    - {"__gridpush_type__": "escaped_dict", "__gridpush_value__": {...}}
    - {"__gridpush_type__": "dict_items", "__gridpush_value__": [[key, value], ...]}
    """
    if isinstance(obj, dict):
        if _ENVELOPE_TYPE_KEY in obj and _ENVELOPE_VALUE_KEY in obj and len(obj) == 2:
            envelope_type = obj[_ENVELOPE_TYPE_KEY]
            envelope_value = obj[_ENVELOPE_VALUE_KEY]

            if envelope_type == "datetime" and isinstance(envelope_value, str):
                return datetime.fromisoformat(envelope_value)

            if envelope_type == "tuple" and isinstance(envelope_value, list):
                return tuple(_restore_types(v) for v in envelope_value)

            if envelope_type == "escaped_dict" and isinstance(envelope_value, dict):
                return {k: _restore_types(v) for k, v in envelope_value.items()}

            if envelope_type == "dict_items" and isinstance(envelope_value, list):
                return {_restore_types(k): _restore_types(v) for k, v in envelope_value}

        return {k: _restore_types(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_restore_types(v) for v in obj]
    return obj


def checkpoint_loads(s: str) -> Any:
    """Deserialize JSON string with type restoration.

    Raises:
        json.JSONDecodeError: If string is not valid JSON
    """
    return _restore_types(json.loads(s))
