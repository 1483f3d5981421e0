"""Field-level structural diff between two snapshots of one phase."""

from __future__ import annotations

import re
from typing import Any, Mapping

from living_story.models import FieldDelta, PhaseDiff
from living_story.phases import Phase

_WHITESPACE = re.compile(r"\s+")


def normalize_text(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and not normalize_text(value)


def values_equal(left: Any, right: Any) -> bool:
    """Structural equality ignoring whitespace-only differences in strings."""
    if is_empty(left) and is_empty(right):
        return True
    if isinstance(left, str) and isinstance(right, str):
        return normalize_text(left) == normalize_text(right)
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        keys = set(left) | set(right)
        return all(values_equal(left.get(key), right.get(key)) for key in keys)
    if isinstance(left, list) and isinstance(right, list):
        if len(left) != len(right):
            return False
        return all(values_equal(a, b) for a, b in zip(left, right))
    return left == right


class ChangeDetector:
    """纯函数式的字段级 diff，不产生任何副作用。"""

    def detect(
        self,
        phase: Phase,
        old_snapshot: Mapping[str, Any] | None,
        new_snapshot: Mapping[str, Any] | None,
    ) -> PhaseDiff | None:
        if old_snapshot is None or new_snapshot is None:
            return None
        fields: dict[str, FieldDelta] = {}
        for key in _ordered_keys(old_snapshot, new_snapshot):
            self._walk(key, old_snapshot.get(key), new_snapshot.get(key), fields)
        if not fields:
            return None
        return PhaseDiff(phase=phase, fields=fields)

    def _walk(self, path: str, before: Any, after: Any, out: dict[str, FieldDelta]) -> None:
        if values_equal(before, after):
            return
        if isinstance(before, Mapping) and isinstance(after, Mapping):
            for key in _ordered_keys(before, after):
                self._walk(f"{path}.{key}", before.get(key), after.get(key), out)
            return
        if isinstance(before, list) and isinstance(after, list) and len(before) == len(after):
            for index, (left, right) in enumerate(zip(before, after)):
                self._walk(f"{path}.{index}", left, right, out)
            return
        out[path] = FieldDelta(before=before, after=after)


def _ordered_keys(left: Mapping[str, Any], right: Mapping[str, Any]) -> list[str]:
    keys = list(left)
    keys.extend(key for key in right if key not in left)
    return keys
