"""Tests for reading and placing operation files."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from gridpush.contracts import Operation
from gridpush.core.operations_io import (
    OperationsFileError,
    bounding_box,
    center_offset,
    colors_match,
    load_operations,
    normalize_color,
    place_at,
)


class TestNormalizeColor:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("#ff0000", "#FF0000"),
            ("00ff00", "#00FF00"),
            ("  #AbCdEf ", "#ABCDEF"),
            ("#fff", None),
            ("red", None),
            (None, None),
            (0xFF0000, None),
        ],
    )
    def test_normalize(self, value: object, expected: str | None) -> None:
        assert normalize_color(value) == expected

    def test_colors_match(self) -> None:
        assert colors_match("#FF0000", "ff0000")
        assert not colors_match("#FF0000", "#FF0001")
        assert not colors_match(None, "#FF0000")


class TestLoadOperations:
    def test_json_pixel_records(self, tmp_path: Path) -> None:
        path = tmp_path / "image.json"
        path.write_text(json.dumps([{"x": 1, "y": 2, "color": "#ff0000"}, {"x": 3, "y": 4, "color": "00FF00"}]))

        assert load_operations(path) == [
            Operation(key=(1, 2), payload="#FF0000"),
            Operation(key=(3, 4), payload="#00FF00"),
        ]

    def test_json_key_payload_records(self, tmp_path: Path) -> None:
        path = tmp_path / "ops.json"
        path.write_text(json.dumps({"operations": [{"key": [5, 6], "payload": "#123456"}]}))

        assert load_operations(path) == [Operation(key=(5, 6), payload="#123456")]

    def test_csv(self, tmp_path: Path) -> None:
        path = tmp_path / "image.csv"
        path.write_text("x,y,color\n0,0,#000000\n10,20,#ffffff\n")

        assert load_operations(path) == [
            Operation(key=(0, 0), payload="#000000"),
            Operation(key=(10, 20), payload="#FFFFFF"),
        ]

    def test_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "image.yaml"
        path.write_text("pixels:\n  - {x: 7, y: 8, color: '#abcdef'}\n")

        assert load_operations(path) == [Operation(key=(7, 8), payload="#ABCDEF")]

    def test_order_and_duplicates_preserved(self, tmp_path: Path) -> None:
        path = tmp_path / "image.json"
        path.write_text(json.dumps([{"x": 1, "y": 1, "color": "#111111"}, {"x": 1, "y": 1, "color": "#222222"}]))

        assert [op.payload for op in load_operations(path)] == ["#111111", "#222222"]

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_operations(tmp_path / "nope.json")

    def test_unknown_suffix(self, tmp_path: Path) -> None:
        path = tmp_path / "image.png"
        path.write_bytes(b"\x89PNG")

        with pytest.raises(OperationsFileError, match="Unsupported"):
            load_operations(path)

    def test_malformed_json(self, tmp_path: Path) -> None:
        path = tmp_path / "image.json"
        path.write_text("[{")

        with pytest.raises(OperationsFileError, match="Could not parse"):
            load_operations(path)

    @pytest.mark.parametrize(
        ("record", "message"),
        [
            ({"x": "a", "y": 1, "color": "#000000"}, "integers"),
            ({"x": -1, "y": 1, "color": "#000000"}, "non-negative"),
            ({"x": 1, "y": 1, "color": "blue"}, "invalid color"),
            ({"key": [1], "payload": "#000000"}, "pair"),
        ],
    )
    def test_invalid_records(self, tmp_path: Path, record: dict[str, object], message: str) -> None:
        path = tmp_path / "image.json"
        path.write_text(json.dumps([record]))

        with pytest.raises(OperationsFileError, match=message):
            load_operations(path)

    def test_not_a_list(self, tmp_path: Path) -> None:
        path = tmp_path / "image.json"
        path.write_text(json.dumps({"width": 10}))

        with pytest.raises(OperationsFileError, match="expected a list"):
            load_operations(path)


class TestPlacement:
    OPS = [
        Operation(key=(10, 20), payload="#000000"),
        Operation(key=(12, 25), payload="#FFFFFF"),
    ]

    def test_bounding_box(self) -> None:
        assert bounding_box(self.OPS) == (10, 20, 3, 6)

    def test_bounding_box_requires_operations(self) -> None:
        with pytest.raises(ValueError):
            bounding_box([])

    def test_place_at(self) -> None:
        placed = place_at(self.OPS, (0, 0))

        assert [op.key for op in placed] == [(0, 0), (2, 5)]
        assert [op.payload for op in placed] == ["#000000", "#FFFFFF"]

    def test_center_offset(self) -> None:
        centered = center_offset(self.OPS, 1000, 1000)

        assert [op.key for op in centered] == [(498, 497), (500, 502)]

    def test_center_offset_too_large(self) -> None:
        with pytest.raises(ValueError, match="does not fit"):
            center_offset(self.OPS, 2, 2)

    def test_empty_inputs(self) -> None:
        assert place_at([], (5, 5)) == []
        assert center_offset([]) == []
