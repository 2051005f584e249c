import os
import sys
import unittest
from datetime import datetime, timezone


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from mailflow.canonical_json import CanonicalJsonTypeError, canonical_dumps, freeze_json


class TestCanonicalJson(unittest.TestCase):
    def test_key_ordering_is_deterministic(self) -> None:
        self.assertEqual(canonical_dumps({"b": 1, "a": 2}), canonical_dumps({"a": 2, "b": 1}))

    def test_nested_dict_ordering(self) -> None:
        obj = {"cart": {"total": 4, "items": 3}, "b": 1}
        self.assertEqual(canonical_dumps(obj), '{"b":1,"cart":{"items":3,"total":4}}')

    def test_tuples_and_datetimes_normalized(self) -> None:
        obj = {"skus": ("a", "b"), "at": datetime(2025, 1, 1, tzinfo=timezone.utc)}
        self.assertEqual(canonical_dumps(obj), '{"at":"2025-01-01T00:00:00+00:00","skus":["a","b"]}')

    def test_non_ascii_preserved(self) -> None:
        out = canonical_dumps({"name": "café"})
        self.assertIn("café", out)
        self.assertNotIn("\\u", out)

    def test_unsupported_type_raises(self) -> None:
        with self.assertRaises(CanonicalJsonTypeError):
            canonical_dumps({"bad": {1, 2, 3}})

    def test_reject_non_finite(self) -> None:
        for value in (float("nan"), float("inf"), float("-inf")):
            with self.assertRaises(ValueError):
                canonical_dumps({"bad": value})

    def test_freeze_json_detaches_snapshot(self) -> None:
        source = {"cart": {"items": ["sku-1"]}}
        frozen = freeze_json(source)
        source["cart"]["items"].append("sku-2")
        self.assertEqual(frozen, {"cart": {"items": ["sku-1"]}})


if __name__ == "__main__":
    unittest.main()
