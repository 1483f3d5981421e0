"""Deterministic, network-free content generator.

Replaces every occurrence of an upstream string's old text inside the target
phase with its new text. Useful offline and as the default generator mode.
"""

from __future__ import annotations

from typing import Any, Iterator, Mapping

from living_story.models import ImpactRequest, ProposedEdit
from living_story.phases import PHASE_FIELDS

MIN_MATCH_LENGTH = 3
LOCAL_CONFIDENCE = 0.5


def _string_leaves(value: Any, path: str) -> Iterator[tuple[str, str]]:
    if isinstance(value, str):
        yield path, value
    elif isinstance(value, Mapping):
        for key, item in value.items():
            yield from _string_leaves(item, f"{path}.{key}")
    elif isinstance(value, list):
        for index, item in enumerate(value):
            yield from _string_leaves(item, f"{path}.{index}")


class LocalContentGenerator:
    async def propose_edits(self, request: ImpactRequest) -> list[ProposedEdit]:
        replacements = [
            (delta.before.strip(), delta.after.strip(), path)
            for path, delta in request.diff.items()
            if isinstance(delta.before, str)
            and isinstance(delta.after, str)
            and len(delta.before.strip()) >= MIN_MATCH_LENGTH
        ]
        if not replacements:
            return []
        addressable = PHASE_FIELDS[request.target_phase]
        edits: list[ProposedEdit] = []
        for head, value in request.target_content.items():
            if head not in addressable:
                continue
            for path, text in _string_leaves(value, head):
                updated = text
                sources: list[str] = []
                for before, after, source_path in replacements:
                    if before in updated:
                        updated = updated.replace(before, after)
                        sources.append(source_path)
                if updated == text:
                    continue
                edits.append(
                    ProposedEdit(
                        field=path,
                        new_value=updated,
                        confidence=LOCAL_CONFIDENCE,
                        reason=(
                            f"{request.source_phase.label} changed "
                            f"{', '.join(sources)}; text updated to match"
                        ),
                        structural=False,
                    )
                )
        return edits
