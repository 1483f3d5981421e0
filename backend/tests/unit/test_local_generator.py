import pytest

from living_story.models import FieldDelta, ImpactRequest
from living_story.phases import Phase
from living_story.services.local_generator import LocalContentGenerator
from tests.shared_stubs import PROJECT_ID, build_executive_document, build_story_dna


def _request(diff: dict[str, FieldDelta]) -> ImpactRequest:
    return ImpactRequest(
        project_id=PROJECT_ID,
        source_phase=Phase.STORY_DNA,
        target_phase=Phase.EXECUTIVE_DOCUMENT,
        diff=diff,
        source_content=build_story_dna(),
        target_content=build_executive_document(),
        update_type="field_specific",
        priority="low",
        dependency_fields=["summary", "theme"],
    )


@pytest.mark.asyncio
async def test_replaces_old_upstream_text_in_target_strings():
    request = _request(
        {"summary": FieldDelta(before="A detective hunts a killer", after="A detective hunts her own sister")}
    )

    edits = await LocalContentGenerator().propose_edits(request)

    assert [edit.field for edit in edits] == ["logline"]
    assert edits[0].new_value == "A detective hunts her own sister"
    assert 0.0 <= edits[0].confidence <= 1.0
    assert "summary" in edits[0].reason


@pytest.mark.asyncio
async def test_no_edits_when_text_does_not_occur():
    request = _request({"theme": FieldDelta(before="Justice and obsession", after="Family")})
    assert await LocalContentGenerator().propose_edits(request) == []


@pytest.mark.asyncio
async def test_ignores_non_string_and_short_deltas():
    request = _request(
        {
            "characters": FieldDelta(before=["Mara"], after=["June"]),
            "theme": FieldDelta(before="A", after="B"),
        }
    )
    assert await LocalContentGenerator().propose_edits(request) == []
