# src/gridpush/core/operations_io.py
"""Operation files: the producer boundary of the dispatcher.

Reads a batch of cell writes from JSON, YAML or CSV and hands the dispatcher
plain Operation objects keyed by (x, y). Accepted record shapes:

    {"x": 10, "y": 20, "color": "#ff0000"}
    {"key": [10, 20], "payload": "#FF0000"}

CSV files carry an ``x,y,color`` header. Colors are normalized to upper-case
``#RRGGBB`` so that reconciliation compares like with like.
"""

from __future__ import annotations

import csv
import json
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml

from gridpush.contracts import Operation

_HEX_COLOR = re.compile(r"^#?([0-9a-fA-F]{6})$")


class OperationsFileError(ValueError):
    """Raised when an operations file cannot be turned into operations."""


def normalize_color(value: Any) -> str | None:
    """Normalize a color to upper-case ``#RRGGBB``; None if it is not one."""
    if not isinstance(value, str):
        return None
    match = _HEX_COLOR.match(value.strip())
    if match is None:
        return None
    return f"#{match.group(1).upper()}"


def colors_match(remote: Any, intended: Any) -> bool:
    """Payload comparator for reconciliation: case and ``#`` insensitive."""
    remote_color = normalize_color(remote)
    return remote_color is not None and remote_color == normalize_color(intended)


def _record_to_operation(record: Any, index: int) -> Operation:
    if not isinstance(record, Mapping):
        raise OperationsFileError(f"Record {index}: expected an object, got {type(record).__name__}")

    if "key" in record:
        raw_key = record["key"]
        if not isinstance(raw_key, (list, tuple)) or len(raw_key) != 2:
            raise OperationsFileError(f"Record {index}: key must be an [x, y] pair, got {raw_key!r}")
        raw_x, raw_y = raw_key
        raw_color = record.get("payload")
    else:
        raw_x, raw_y, raw_color = record.get("x"), record.get("y"), record.get("color")

    try:
        x, y = int(raw_x), int(raw_y)
    except (TypeError, ValueError):
        raise OperationsFileError(f"Record {index}: coordinates must be integers, got ({raw_x!r}, {raw_y!r})") from None
    if x < 0 or y < 0:
        raise OperationsFileError(f"Record {index}: coordinates must be non-negative, got ({x}, {y})")

    color = normalize_color(raw_color)
    if color is None:
        raise OperationsFileError(f"Record {index}: invalid color {raw_color!r}")
    return Operation(key=(x, y), payload=color)


def parse_operations(records: Iterable[Any]) -> list[Operation]:
    """Convert decoded records into operations, in file order."""
    return [_record_to_operation(record, index) for index, record in enumerate(records)]


def load_operations(path: Path) -> list[Operation]:
    """Load operations from a ``.json``, ``.yaml``/``.yml`` or ``.csv`` file.

    Raises:
        FileNotFoundError: If the file does not exist.
        OperationsFileError: If the file is malformed or uses an unknown suffix.
    """
    suffix = path.suffix.lower()
    with path.open(encoding="utf-8", newline="" if suffix == ".csv" else None) as f:
        try:
            if suffix == ".json":
                data = json.load(f)
            elif suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            elif suffix == ".csv":
                data = list(csv.DictReader(f))
            else:
                raise OperationsFileError(f"Unsupported operations file type: {path.suffix or '(none)'}")
        except (json.JSONDecodeError, yaml.YAMLError, csv.Error) as e:
            raise OperationsFileError(f"Could not parse {path}: {e}") from e

    # {"pixels": [...]} is accepted as well as a bare list
    if isinstance(data, Mapping):
        data = data.get("pixels", data.get("operations"))
    if not isinstance(data, list):
        raise OperationsFileError(f"{path}: expected a list of records")
    return parse_operations(data)


def bounding_box(operations: Iterable[Operation]) -> tuple[int, int, int, int]:
    """Return (min_x, min_y, width, height) of the operations' keys.

    Raises:
        ValueError: If there are no operations.
    """
    keys = [op.key for op in operations]
    if not keys:
        raise ValueError("No operations to measure")
    xs = [x for x, _ in keys]
    ys = [y for _, y in keys]
    return min(xs), min(ys), max(xs) - min(xs) + 1, max(ys) - min(ys) + 1


def place_at(operations: Iterable[Operation], origin: tuple[int, int]) -> list[Operation]:
    """Translate operations so their bounding box starts at ``origin``."""
    ops = list(operations)
    if not ops:
        return []
    min_x, min_y, _, _ = bounding_box(ops)
    dx, dy = origin[0] - min_x, origin[1] - min_y
    return [Operation(key=(op.key[0] + dx, op.key[1] + dy), payload=op.payload) for op in ops]


def center_offset(operations: Iterable[Operation], canvas_width: int = 1000, canvas_height: int = 1000) -> list[Operation]:
    """Translate operations so their bounding box is centered on the canvas.

    Raises:
        ValueError: If the operations do not fit on the canvas.
    """
    ops = list(operations)
    if not ops:
        return []
    _, _, width, height = bounding_box(ops)
    if width > canvas_width or height > canvas_height:
        raise ValueError(f"Image of {width}x{height} does not fit a {canvas_width}x{canvas_height} canvas")
    origin = ((canvas_width - width) // 2, (canvas_height - height) // 2)
    return place_at(ops, origin)


__all__ = [
    "OperationsFileError",
    "bounding_box",
    "center_offset",
    "colors_match",
    "load_operations",
    "normalize_color",
    "parse_operations",
    "place_at",
]
