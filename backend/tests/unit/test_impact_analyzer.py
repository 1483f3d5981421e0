import asyncio

import pytest

from living_story.errors import AnalysisUnavailable
from living_story.models import ChangeStatus, ChangeType, ProposedEdit
from living_story.phases import Phase
from living_story.services.change_detector import ChangeDetector
from living_story.services.impact_analyzer import ImpactAnalyzer, RiskPolicy
from living_story.storage.memory_storage import InMemoryStoryStorage
from tests.shared_stubs import (
    PROJECT_ID,
    FailingGenerator,
    ScriptedGenerator,
    SequentialIds,
    SlowGenerator,
    TickingClock,
    build_scene_beats,
    build_scene_structure,
    build_story_dna,
    stakes_edit,
)


def _seed(storage: InMemoryStoryStorage, *phases: Phase) -> None:
    builders = {
        Phase.STORY_DNA: build_story_dna,
        Phase.SCENE_STRUCTURE: build_scene_structure,
        Phase.SCENE_BEATS: build_scene_beats,
    }
    for phase in phases:
        storage.write_phase(
            project_id=PROJECT_ID, phase=phase, value=builders[phase](), expected_version=None
        )


def _summary_diff():
    return ChangeDetector().detect(
        Phase.STORY_DNA,
        build_story_dna("A detective hunts a killer"),
        build_story_dna("A detective hunts her own sister"),
    )


def _analyzer(storage, generator, **kwargs) -> ImpactAnalyzer:
    return ImpactAnalyzer(
        storage,
        generator,
        clock=TickingClock(),
        id_factory=SequentialIds(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_analyze_builds_pending_change_with_preview():
    storage = InMemoryStoryStorage()
    _seed(storage, Phase.STORY_DNA, Phase.SCENE_STRUCTURE)
    generator = ScriptedGenerator({Phase.SCENE_STRUCTURE: [stakes_edit()]})

    proposals = await _analyzer(storage, generator).analyze(
        PROJECT_ID, Phase.STORY_DNA, _summary_diff(), source_version=2
    )

    assert len(proposals) == 1
    change, preview = proposals[0].change, proposals[0].preview
    assert change.status is ChangeStatus.pending
    assert change.type is ChangeType.auto_update
    assert change.phase is Phase.SCENE_STRUCTURE
    assert change.field == "stakes"
    assert change.old_value == "If she fails, a killer walks free"
    assert change.source_phase is Phase.STORY_DNA
    assert change.source_version == 2
    assert change.affected_phases == [Phase.SCENE_BEATS, Phase.EXECUTIVE_DOCUMENT]
    assert preview.change_id == change.id
    assert preview.changes[0].confidence == 0.82
    assert [impact.phase for impact in preview.impact] == [
        Phase.SCENE_STRUCTURE,
        Phase.SCENE_BEATS,
        Phase.EXECUTIVE_DOCUMENT,
    ]
    assert preview.impact[0].affected_fields == ["stakes"]
    assert preview.impact[0].risk_level == "low"


@pytest.mark.asyncio
async def test_targets_without_content_are_skipped():
    storage = InMemoryStoryStorage()
    _seed(storage, Phase.STORY_DNA, Phase.SCENE_STRUCTURE)
    generator = ScriptedGenerator({Phase.SCENE_STRUCTURE: [stakes_edit()]})

    await _analyzer(storage, generator).analyze(
        PROJECT_ID, Phase.STORY_DNA, _summary_diff(), source_version=2
    )

    assert [request.target_phase for request in generator.requests] == [Phase.SCENE_STRUCTURE]
    assert generator.requests[0].priority == "high"
    assert list(generator.requests[0].diff) == ["summary"]


@pytest.mark.asyncio
async def test_no_diff_means_no_generator_call():
    storage = InMemoryStoryStorage()
    generator = ScriptedGenerator()
    assert await _analyzer(storage, generator).analyze(
        PROJECT_ID, Phase.STORY_DNA, None, source_version=1
    ) == []
    assert generator.requests == []


@pytest.mark.asyncio
async def test_low_confidence_is_never_filtered():
    storage = InMemoryStoryStorage()
    _seed(storage, Phase.STORY_DNA, Phase.SCENE_STRUCTURE)
    generator = ScriptedGenerator({Phase.SCENE_STRUCTURE: [stakes_edit(confidence=0.01)]})

    proposals = await _analyzer(storage, generator).analyze(
        PROJECT_ID, Phase.STORY_DNA, _summary_diff(), source_version=2
    )

    assert len(proposals) == 1


@pytest.mark.asyncio
async def test_noop_edits_are_dropped():
    storage = InMemoryStoryStorage()
    _seed(storage, Phase.STORY_DNA, Phase.SCENE_STRUCTURE)
    generator = ScriptedGenerator(
        {Phase.SCENE_STRUCTURE: [stakes_edit(new_value="If she fails, a killer walks free")]}
    )

    assert await _analyzer(storage, generator).analyze(
        PROJECT_ID, Phase.STORY_DNA, _summary_diff(), source_version=2
    ) == []


@pytest.mark.asyncio
async def test_structural_field_is_high_risk():
    storage = InMemoryStoryStorage()
    _seed(storage, Phase.STORY_DNA, Phase.SCENE_STRUCTURE)
    edit = ProposedEdit(
        field="scenes.1.title", new_value="The sister", confidence=0.6, reason="renamed"
    )
    generator = ScriptedGenerator({Phase.SCENE_STRUCTURE: [edit]})

    proposals = await _analyzer(storage, generator).analyze(
        PROJECT_ID, Phase.STORY_DNA, _summary_diff(), source_version=2
    )

    assert proposals[0].preview.impact[0].risk_level == "high"


def test_risk_policy_thresholds():
    policy = RiskPolicy(high_field_count=3, medium_field_count=2)
    assert policy.level(["a"], structural=False) == "low"
    assert policy.level(["a", "b"], structural=False) == "medium"
    assert policy.level(["a", "b", "c"], structural=False) == "medium"
    assert policy.level(["a", "b", "c", "d"], structural=False) == "high"
    assert policy.level(["a"], structural=True) == "high"


def test_risk_policy_rejects_inverted_thresholds():
    with pytest.raises(ValueError):
        RiskPolicy(high_field_count=1, medium_field_count=2)


@pytest.mark.asyncio
async def test_generator_failure_fails_closed():
    storage = InMemoryStoryStorage()
    _seed(storage, Phase.STORY_DNA, Phase.SCENE_STRUCTURE)

    with pytest.raises(AnalysisUnavailable, match="generator failed"):
        await _analyzer(storage, FailingGenerator()).analyze(
            PROJECT_ID, Phase.STORY_DNA, _summary_diff(), source_version=2
        )


@pytest.mark.asyncio
async def test_one_invalid_edit_fails_the_whole_event():
    storage = InMemoryStoryStorage()
    _seed(storage, Phase.STORY_DNA, Phase.SCENE_STRUCTURE, Phase.SCENE_BEATS)
    bad = ProposedEdit(field="villain", new_value="x", confidence=0.5, reason="invented")
    generator = ScriptedGenerator(
        {Phase.SCENE_STRUCTURE: [stakes_edit()], Phase.SCENE_BEATS: [bad]}
    )

    with pytest.raises(AnalysisUnavailable, match="invalid edit for phase 3"):
        await _analyzer(storage, generator).analyze(
            PROJECT_ID, Phase.STORY_DNA, _summary_diff(), source_version=2
        )


@pytest.mark.asyncio
async def test_edit_producing_invalid_payload_fails_closed():
    storage = InMemoryStoryStorage()
    _seed(storage, Phase.STORY_DNA, Phase.SCENE_STRUCTURE)
    bad = ProposedEdit(field="scenes.0.tension_level", new_value=99, confidence=0.5, reason="x")
    generator = ScriptedGenerator({Phase.SCENE_STRUCTURE: [bad]})

    with pytest.raises(AnalysisUnavailable):
        await _analyzer(storage, generator).analyze(
            PROJECT_ID, Phase.STORY_DNA, _summary_diff(), source_version=2
        )


@pytest.mark.asyncio
async def test_timeout_fails_closed():
    storage = InMemoryStoryStorage()
    _seed(storage, Phase.STORY_DNA, Phase.SCENE_STRUCTURE)
    analyzer = _analyzer(storage, SlowGenerator(delay_seconds=1.0), timeout_seconds=0.05)

    with pytest.raises(AnalysisUnavailable, match="timed out"):
        await analyzer.analyze(PROJECT_ID, Phase.STORY_DNA, _summary_diff(), source_version=2)


@pytest.mark.asyncio
async def test_generator_calls_run_concurrently():
    storage = InMemoryStoryStorage()
    _seed(storage, Phase.STORY_DNA, Phase.SCENE_STRUCTURE, Phase.SCENE_BEATS)
    analyzer = _analyzer(storage, SlowGenerator(delay_seconds=0.2), timeout_seconds=0.35)

    loop = asyncio.get_running_loop()
    started = loop.time()
    assert await analyzer.analyze(
        PROJECT_ID, Phase.STORY_DNA, _summary_diff(), source_version=2
    ) == []
    assert loop.time() - started < 0.35
