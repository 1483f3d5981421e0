import pytest

from living_story.errors import VersionConflict
from living_story.models import ChangePreview, ChangeRecord, ChangeStatus, ChangeType, StoryChange
from living_story.phases import Phase
from living_story.services.change_queue import ChangeQueue
from living_story.services.impact_analyzer import ProposedChange
from living_story.services.project_locks import ProjectLocks
from tests.shared_stubs import PROJECT_ID, TickingClock, build_scene_structure


def _pending(change_id: str, clock: TickingClock) -> StoryChange:
    return StoryChange(
        id=change_id,
        project_id=PROJECT_ID,
        phase=Phase.SCENE_STRUCTURE,
        type=ChangeType.auto_update,
        field="stakes",
        old_value="If she fails, a killer walks free",
        new_value="If she fails, her own sister dies",
        reason="summary changed",
        affected_phases=[Phase.SCENE_BEATS],
        timestamp=clock(),
        source_phase=Phase.STORY_DNA,
        source_version=1,
    )


def test_phase_write_is_versioned(memgraph_storage):
    first = memgraph_storage.write_phase(
        project_id=PROJECT_ID,
        phase=Phase.SCENE_STRUCTURE,
        value=build_scene_structure(),
        expected_version=None,
    )
    assert first.version == 1

    with pytest.raises(VersionConflict):
        memgraph_storage.write_phase(
            project_id=PROJECT_ID,
            phase=Phase.SCENE_STRUCTURE,
            value=build_scene_structure(),
            expected_version=None,
        )

    stored = memgraph_storage.get_phase(project_id=PROJECT_ID, phase=Phase.SCENE_STRUCTURE)
    assert stored.value == first.value
    assert [r.phase for r in memgraph_storage.list_phases(project_id=PROJECT_ID)] == [
        Phase.SCENE_STRUCTURE
    ]


def test_changes_keep_preview_and_sequence(memgraph_storage):
    clock = TickingClock()
    change = _pending("c-1", clock)
    preview = ChangePreview(change_id="c-1", phase=Phase.SCENE_STRUCTURE)
    [stored] = memgraph_storage.insert_changes([ChangeRecord(change=change, preview=preview)])

    assert stored.change.sequence >= 1
    memgraph_storage.update_change(stored.change.model_copy(update={"status": ChangeStatus.rejected}))

    fetched = memgraph_storage.get_change(change_id="c-1")
    assert fetched.change.status is ChangeStatus.rejected
    assert fetched.preview == preview
    assert memgraph_storage.find_change(
        project_id=PROJECT_ID,
        phase=Phase.SCENE_STRUCTURE,
        field="stakes",
        source_phase=Phase.STORY_DNA,
        source_version=1,
    ) is not None
    assert memgraph_storage.list_changes(project_id=PROJECT_ID, statuses=[ChangeStatus.pending]) == []


@pytest.mark.asyncio
async def test_accept_through_queue(memgraph_storage):
    clock = TickingClock()
    memgraph_storage.write_phase(
        project_id=PROJECT_ID,
        phase=Phase.SCENE_STRUCTURE,
        value=build_scene_structure(),
        expected_version=None,
    )
    queue = ChangeQueue(memgraph_storage, ProjectLocks(), clock=clock)
    change = _pending("c-1", clock)
    await queue.enqueue(
        [ProposedChange(change=change, preview=ChangePreview(change_id="c-1", phase=Phase.SCENE_STRUCTURE))]
    )

    applied = await queue.accept("c-1")

    assert applied.status is ChangeStatus.applied
    record = memgraph_storage.get_phase(project_id=PROJECT_ID, phase=Phase.SCENE_STRUCTURE)
    assert record.version == 2
    assert record.value["stakes"] == "If she fails, her own sister dies"
    assert queue.list_pending(PROJECT_ID) == []
