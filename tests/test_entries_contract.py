"""Contract tests for EntriesAdapter.

Every test here runs once per backend (memory, detached SQLite, file
SQLite) through the ``backend`` fixture; backends must behave identically.
"""

import pytest

from abcjournal.adapter import EntryFilter
from abcjournal.errors import (
    DuplicateEntryError,
    NotFoundError,
    StaleAcknowledgment,
    ValidationError,
)
from abcjournal.memory import MemoryEntriesAdapter
from abcjournal.models import (
    AnalyzeBeliefResult,
    DisputeBeliefResult,
    SyncState,
    ThinkingPattern,
)
from abcjournal.testing import DEFAULT_START

T0 = DEFAULT_START


def _response(restated="You believe you have no value."):
    return AnalyzeBeliefResult(
        restated_belief=restated,
        thinking_patterns=(ThinkingPattern("Global labeling", "I'm worthless", "One event, whole self."),),
        educational_summary="Labels hide specifics.",
    )


def _dispute(alternative="Losing a job is an event, not an identity."):
    return DisputeBeliefResult(
        acknowledgement="That hurts.",
        disputes=("Capable people lose jobs too.",),
        alternative_belief=alternative,
        encouragement="One step at a time.",
    )


async def _seed(backend, **fields):
    values = {"adversity": "Lost my job", "belief": "I'm worthless"}
    values.update(fields)
    return await backend.adapter.create(values)


class TestCreate:
    """create() stamps, validates and persists new entries."""

    @pytest.mark.asyncio
    async def test_create_fills_defaults(self, backend):
        entry = await _seed(backend)

        assert entry.id == "entry-0"
        assert entry.created_at == T0
        assert entry.updated_at == T0
        assert entry.dirty_since == T0
        assert entry.is_deleted is False
        assert entry.ai_response is None
        assert entry.ai_retry_count == 0
        assert entry.dispute_history == []
        assert entry.sync_state is SyncState.DIRTY

        stored = await backend.adapter.get_by_id(entry.id)
        assert stored == entry

    @pytest.mark.asyncio
    async def test_create_accepts_keyword_fields_and_caller_id(self, backend):
        entry = await backend.adapter.create(
            id="caller-id",
            adversity="Missed the train",
            belief="I always mess up",
            consequence="Anxious all morning",
            account_id="acct-1",
        )

        assert entry.id == "caller-id"
        assert entry.consequence == "Anxious all morning"
        assert entry.account_id == "acct-1"

    @pytest.mark.asyncio
    async def test_generated_ids_are_unique(self, backend):
        ids = {(await _seed(backend)).id for _ in range(5)}
        assert len(ids) == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "fields, field",
        [
            ({"belief": "I'm worthless"}, "adversity"),
            ({"adversity": "Lost my job"}, "belief"),
            ({"adversity": "   ", "belief": "I'm worthless"}, "adversity"),
            ({"adversity": "Lost my job", "belief": ""}, "belief"),
            ({"adversity": "Lost my job", "belief": 42}, "belief"),
            ({"adversity": "Lost my job", "belief": "x", "energy": 3}, "energy"),
            ({"adversity": "Lost my job", "belief": "x", "account_id": 123}, "account_id"),
        ],
    )
    async def test_create_rejects_invalid_text(self, backend, fields, field):
        with pytest.raises(ValidationError) as excinfo:
            await backend.adapter.create(fields)
        assert excinfo.value.field == field
        assert await backend.adapter.list(is_deleted=None) == []

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_fields(self, backend):
        with pytest.raises(ValidationError):
            await _seed(backend, dirty_since=None)

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected_even_for_tombstones(self, backend):
        await _seed(backend, id="same")
        with pytest.raises(DuplicateEntryError):
            await _seed(backend, id="same")

        await backend.adapter.soft_delete("same")
        with pytest.raises(DuplicateEntryError):
            await _seed(backend, id="same")


class TestUpdate:
    """update() merges patches and tracks local mutations."""

    @pytest.mark.asyncio
    async def test_update_marks_dirty_with_new_timestamp(self, backend):
        entry = await _seed(backend)
        t1 = backend.clock.advance(seconds=1)

        updated = await backend.adapter.update(entry.id, consequence="Stayed in bed all day")

        assert updated.consequence == "Stayed in bed all day"
        assert updated.updated_at == t1
        assert updated.dirty_since == t1
        assert updated.created_at == T0
        assert updated.adversity == entry.adversity
        assert updated.belief == entry.belief

    @pytest.mark.asyncio
    async def test_patch_mapping_and_keywords_merge(self, backend):
        entry = await _seed(backend)

        updated = await backend.adapter.update(entry.id, {"dispute": "Not true"}, energy="Calmer")

        assert updated.dispute == "Not true"
        assert updated.energy == "Calmer"

    @pytest.mark.asyncio
    async def test_optional_fields_can_be_cleared(self, backend):
        entry = await _seed(backend, consequence="Cried")

        updated = await backend.adapter.update(entry.id, consequence=None)

        assert updated.consequence is None

    @pytest.mark.asyncio
    async def test_account_id_must_be_text(self, backend):
        entry = await _seed(backend, account_id="acct-1")

        with pytest.raises(ValidationError) as excinfo:
            await backend.adapter.update(entry.id, account_id=123)

        assert excinfo.value.field == "account_id"
        assert (await backend.adapter.get_by_id(entry.id)).account_id == "acct-1"

    @pytest.mark.asyncio
    async def test_update_missing_id(self, backend):
        with pytest.raises(NotFoundError):
            await backend.adapter.update("nope", belief="x")

    @pytest.mark.asyncio
    async def test_failed_update_leaves_entry_untouched(self, backend):
        entry = await _seed(backend)
        backend.clock.advance(seconds=1)

        with pytest.raises(ValidationError):
            await backend.adapter.update(entry.id, consequence="Cried", belief="  ")

        assert await backend.adapter.get_by_id(entry.id) == entry

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field", ["id", "created_at", "updated_at", "dirty_since", "is_deleted", "dispute_history"]
    )
    async def test_local_patch_cannot_touch_bookkeeping(self, backend, field):
        entry = await _seed(backend)
        with pytest.raises(ValidationError):
            await backend.adapter.update(entry.id, {field: None})

    @pytest.mark.asyncio
    async def test_updated_at_never_moves_backwards(self, backend):
        entry = await _seed(backend)
        backend.clock.set("2025-09-10T00:00:00.000Z")

        updated = await backend.adapter.update(entry.id, energy="Tired")

        assert updated.updated_at == T0
        assert updated.dirty_since == T0

    @pytest.mark.asyncio
    async def test_returned_entries_are_independent_copies(self, backend):
        entry = await _seed(backend)
        entry.belief = "mutated locally"
        entry.dispute_history.append("junk")

        stored = await backend.adapter.get_by_id(entry.id)
        assert stored.belief == "I'm worthless"
        assert stored.dispute_history == []


class TestSoftDelete:
    """Tombstones stay readable and syncable."""

    @pytest.mark.asyncio
    async def test_soft_delete_creates_dirty_tombstone(self, backend):
        entry = await _seed(backend)
        t1 = backend.clock.advance(seconds=1)

        tombstone = await backend.adapter.soft_delete(entry.id)

        assert tombstone.is_deleted is True
        assert tombstone.updated_at == t1
        assert tombstone.dirty_since == t1
        assert tombstone.sync_state is SyncState.DELETED_DIRTY
        assert (await backend.adapter.get_by_id(entry.id)).is_deleted is True

    @pytest.mark.asyncio
    async def test_soft_delete_is_idempotent(self, backend):
        entry = await _seed(backend)
        await backend.adapter.soft_delete(entry.id)
        t2 = backend.clock.advance(seconds=5)

        again = await backend.adapter.soft_delete(entry.id)

        assert again.is_deleted is True
        assert again.dirty_since == t2

    @pytest.mark.asyncio
    async def test_soft_delete_missing_id(self, backend):
        with pytest.raises(NotFoundError):
            await backend.adapter.soft_delete("nope")

    @pytest.mark.asyncio
    async def test_list_hides_tombstones_by_default(self, backend):
        live = await _seed(backend)
        gone = await _seed(backend)
        await backend.adapter.soft_delete(gone.id)

        assert [e.id for e in await backend.adapter.list()] == [live.id]
        assert [e.id for e in await backend.adapter.list(is_deleted=True)] == [gone.id]
        assert {e.id for e in await backend.adapter.list(is_deleted=None)} == {live.id, gone.id}

    @pytest.mark.asyncio
    async def test_acknowledged_tombstone_is_deleted_synced(self, backend):
        entry = await _seed(backend)
        t1 = backend.clock.advance(seconds=1)
        await backend.adapter.soft_delete(entry.id)

        result = await backend.adapter.mark_synced(entry.id, t1)

        assert result.sync_state is SyncState.DELETED_SYNCED
        assert result.is_deleted is True
        assert result.dirty_since is None


class TestMarkSynced:
    """Sync acknowledgments clear dirty state only when nothing newer happened."""

    @pytest.mark.asyncio
    async def test_create_update_sync_update(self, backend):
        entry = await _seed(backend)
        t1 = backend.clock.advance(seconds=1)
        await backend.adapter.update(entry.id, consequence="Stayed home")

        synced = await backend.adapter.mark_synced(entry.id, t1)
        assert synced.dirty_since is None
        assert synced.updated_at == t1
        assert synced.sync_state is SyncState.CLEAN

        t2 = backend.clock.advance(seconds=1)
        edited = await backend.adapter.update(entry.id, energy="A bit better")
        assert edited.dirty_since == t2

    @pytest.mark.asyncio
    async def test_stale_acknowledgment_is_returned_not_raised(self, backend):
        entry = await _seed(backend)
        t1 = backend.clock.advance(seconds=1)
        await backend.adapter.update(entry.id, energy="Tired")

        result = await backend.adapter.mark_synced(entry.id, T0)

        assert isinstance(result, StaleAcknowledgment)
        assert result.entry_id == entry.id
        assert result.synced_at == T0
        assert result.dirty_since == t1
        stored = await backend.adapter.get_by_id(entry.id)
        assert stored.dirty_since == t1

    @pytest.mark.asyncio
    async def test_acknowledging_clean_entry_changes_nothing(self, backend):
        entry = await _seed(backend)
        await backend.adapter.mark_synced(entry.id, T0)
        backend.clock.advance(seconds=1)

        again = await backend.adapter.mark_synced(entry.id, backend.clock.now_iso())

        assert again.dirty_since is None
        assert again.updated_at == T0

    @pytest.mark.asyncio
    async def test_mark_synced_missing_id(self, backend):
        with pytest.raises(NotFoundError):
            await backend.adapter.mark_synced("nope", T0)

    @pytest.mark.asyncio
    async def test_mark_synced_rejects_bad_timestamp(self, backend):
        entry = await _seed(backend)
        with pytest.raises(ValidationError):
            await backend.adapter.mark_synced(entry.id, "yesterday")


class TestRemoteWrites:
    """update(from_sync=True) applies pulls without marking entries dirty."""

    @pytest.mark.asyncio
    async def test_from_sync_clears_dirty_and_takes_remote_stamp(self, backend):
        entry = await _seed(backend)
        remote = "2025-09-11T00:00:30.000Z"

        pulled = await backend.adapter.update(
            entry.id, {"belief": "I'm struggling", "updated_at": remote}, from_sync=True
        )

        assert pulled.belief == "I'm struggling"
        assert pulled.updated_at == remote
        assert pulled.dirty_since is None

    @pytest.mark.asyncio
    async def test_from_sync_never_rewinds_updated_at(self, backend):
        entry = await _seed(backend)
        t1 = backend.clock.advance(minutes=1)
        await backend.adapter.update(entry.id, energy="Okay")

        pulled = await backend.adapter.update(entry.id, {"updated_at": T0}, from_sync=True)

        assert pulled.updated_at == t1

    @pytest.mark.asyncio
    async def test_remote_stamp_with_offset_is_stored_in_utc(self, backend):
        first = await _seed(backend)
        second = await _seed(backend)

        pulled = await backend.adapter.update(
            first.id, {"updated_at": "2025-09-11T01:10:00+01:00"}, from_sync=True
        )
        await backend.adapter.update(second.id, {"updated_at": "2025-09-11T00:30:00.000Z"}, from_sync=True)

        assert pulled.updated_at == "2025-09-11T00:10:00.000Z"
        assert [e.id for e in await backend.adapter.list()] == [second.id, first.id]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stamp", ["yesterday", "", 42])
    async def test_malformed_remote_stamp_rejected(self, backend, stamp):
        entry = await _seed(backend)

        with pytest.raises(ValidationError) as excinfo:
            await backend.adapter.update(entry.id, {"belief": "x", "updated_at": stamp}, from_sync=True)

        assert excinfo.value.field == "updated_at"
        assert await backend.adapter.get_by_id(entry.id) == entry

    @pytest.mark.asyncio
    async def test_remote_tombstone(self, backend):
        entry = await _seed(backend)

        pulled = await backend.adapter.update(entry.id, {"is_deleted": True}, from_sync=True)

        assert pulled.sync_state is SyncState.DELETED_SYNCED

    @pytest.mark.asyncio
    async def test_from_sync_may_replace_dispute_history(self, backend):
        entry = await _seed(backend)
        await backend.adapter.append_dispute(entry.id, _dispute())

        pulled = await backend.adapter.update(entry.id, {"dispute_history": []}, from_sync=True)

        assert pulled.dispute_history == []


class TestAiFields:
    """AI bookkeeping rules enforced by every adapter."""

    @pytest.mark.asyncio
    async def test_storing_response_resets_retry_count_and_stamps_it(self, backend):
        entry = await _seed(backend)
        await backend.adapter.increment_retry(entry.id)
        await backend.adapter.increment_retry(entry.id)
        t1 = backend.clock.advance(seconds=3)

        updated = await backend.adapter.update(entry.id, ai_response=_response())

        assert updated.ai_retry_count == 0
        assert updated.ai_response.created_at == t1
        assert updated.dirty_since == t1
        assert await backend.adapter.get_by_id(entry.id) == updated

    @pytest.mark.asyncio
    async def test_response_accepted_as_mapping(self, backend):
        entry = await _seed(backend)

        updated = await backend.adapter.update(
            entry.id, ai_response={"restatedBelief": "Restated", "thinkingPatterns": []}
        )

        assert updated.ai_response.restated_belief == "Restated"
        assert updated.ai_response.thinking_patterns == ()

    @pytest.mark.asyncio
    async def test_increment_retry_only_without_response(self, backend):
        entry = await _seed(backend)

        bumped = await backend.adapter.increment_retry(entry.id)
        assert bumped.ai_retry_count == 1

        await backend.adapter.update(entry.id, ai_response=_response())
        backend.clock.advance(seconds=1)
        before = await backend.adapter.get_by_id(entry.id)

        untouched = await backend.adapter.increment_retry(entry.id)
        assert untouched == before

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [-1, True, "2", 1.5])
    async def test_retry_count_must_be_non_negative_int(self, backend, count):
        entry = await _seed(backend)
        with pytest.raises(ValidationError):
            await backend.adapter.update(entry.id, ai_retry_count=count)

    @pytest.mark.asyncio
    async def test_retry_count_cannot_decrease_without_response(self, backend):
        entry = await _seed(backend)
        await backend.adapter.increment_retry(entry.id)
        with pytest.raises(ValidationError):
            await backend.adapter.update(entry.id, ai_retry_count=0)

    @pytest.mark.asyncio
    async def test_retry_count_cannot_grow_with_response(self, backend):
        entry = await _seed(backend)
        await backend.adapter.update(entry.id, ai_response=_response())
        with pytest.raises(ValidationError):
            await backend.adapter.update(entry.id, ai_retry_count=1)

    @pytest.mark.asyncio
    async def test_editing_analyzed_fields_marks_response_stale(self, backend):
        entry = await _seed(backend)
        await backend.adapter.update(entry.id, ai_response=_response())

        untouched = await backend.adapter.update(entry.id, energy="Calmer")
        assert untouched.ai_response.is_stale is False
        assert untouched.needs_analysis is False

        edited = await backend.adapter.update(entry.id, belief="I'm struggling right now")
        assert edited.ai_response.is_stale is True
        assert edited.needs_analysis is True

    @pytest.mark.asyncio
    async def test_same_value_does_not_mark_stale(self, backend):
        entry = await _seed(backend)
        await backend.adapter.update(entry.id, ai_response=_response())

        same = await backend.adapter.update(entry.id, belief=entry.belief)

        assert same.ai_response.is_stale is False

    @pytest.mark.asyncio
    async def test_append_dispute_builds_ordered_history(self, backend):
        entry = await _seed(backend)
        t1 = backend.clock.advance(seconds=1)
        await backend.adapter.append_dispute(entry.id, _dispute("First reframe"))
        t2 = backend.clock.advance(seconds=1)
        updated = await backend.adapter.append_dispute(entry.id, _dispute("Second reframe"))

        assert [r.result.alternative_belief for r in updated.dispute_history] == [
            "First reframe",
            "Second reframe",
        ]
        assert [r.created_at for r in updated.dispute_history] == [t1, t2]
        assert updated.dirty_since == t2
        assert await backend.adapter.get_by_id(entry.id) == updated

    @pytest.mark.asyncio
    async def test_dispute_history_grows_only_through_append(self, backend):
        entry = await _seed(backend)
        first = await backend.adapter.append_dispute(entry.id, _dispute("First"))
        extra = first.dispute_history[0].to_dict()
        extra["alternativeBelief"] = "Second"

        for history in ([], first.dispute_history + [extra]):
            with pytest.raises(ValidationError):
                await backend.adapter.update(entry.id, dispute_history=history)

        assert await backend.adapter.get_by_id(entry.id) == first


class TestList:
    """list() filters and orders identically on every backend."""

    @pytest.mark.asyncio
    async def test_default_order_is_most_recently_updated_first(self, backend):
        first = await _seed(backend)
        backend.clock.advance(seconds=1)
        second = await _seed(backend)
        backend.clock.advance(seconds=1)
        await backend.adapter.update(first.id, energy="Better")

        assert [e.id for e in await backend.adapter.list()] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_order_by_created_ascending(self, backend):
        first = await _seed(backend)
        backend.clock.advance(seconds=1)
        second = await _seed(backend)
        await backend.adapter.update(first.id, energy="Better")

        listed = await backend.adapter.list(order_by="created_at", descending=False)

        assert [e.id for e in listed] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_ties_break_on_id(self, backend):
        a = await _seed(backend, id="a")
        b = await _seed(backend, id="b")

        assert [e.id for e in await backend.adapter.list()] == [b.id, a.id]
        assert [e.id for e in await backend.adapter.list(descending=False)] == [a.id, b.id]

    @pytest.mark.asyncio
    async def test_limit(self, backend):
        for _ in range(4):
            await _seed(backend)
            backend.clock.advance(seconds=1)

        listed = await backend.adapter.list(limit=2)

        assert [e.id for e in listed] == ["entry-3", "entry-2"]
        assert await backend.adapter.list(limit=0) == []

    @pytest.mark.asyncio
    async def test_dirty_only(self, backend):
        synced = await _seed(backend)
        dirty = await _seed(backend)
        await backend.adapter.mark_synced(synced.id, T0)

        assert [e.id for e in await backend.adapter.list(dirty_only=True)] == [dirty.id]

    @pytest.mark.asyncio
    async def test_dirty_only_includes_tombstones_when_asked(self, backend):
        gone = await _seed(backend)
        await backend.adapter.soft_delete(gone.id)

        listed = await backend.adapter.list(EntryFilter(is_deleted=None, dirty_only=True))

        assert [e.id for e in listed] == [gone.id]

    @pytest.mark.asyncio
    async def test_account_filter(self, backend):
        mine = await _seed(backend, account_id="acct-1")
        unclaimed = await _seed(backend)

        assert [e.id for e in await backend.adapter.list(account_id="acct-1")] == [mine.id]
        assert [e.id for e in await backend.adapter.list(account_id=None)] == [unclaimed.id]
        assert len(await backend.adapter.list()) == 2

    @pytest.mark.asyncio
    async def test_needs_analysis(self, backend):
        fresh = await _seed(backend)
        analyzed = await _seed(backend)
        stale = await _seed(backend)
        gone = await _seed(backend)
        await backend.adapter.update(analyzed.id, ai_response=_response())
        await backend.adapter.update(stale.id, ai_response=_response())
        await backend.adapter.update(stale.id, adversity="Lost my job and my flat")
        await backend.adapter.soft_delete(gone.id)

        listed = await backend.adapter.list(needs_analysis=True, order_by="created_at", descending=False)

        assert [e.id for e in listed] == [fresh.id, stale.id]

    @pytest.mark.asyncio
    async def test_needs_analysis_with_limit(self, backend):
        for _ in range(3):
            entry = await _seed(backend)
            await backend.adapter.update(entry.id, ai_response=_response())
        pending = await _seed(backend)

        listed = await backend.adapter.list(needs_analysis=True, limit=1)

        assert [e.id for e in listed] == [pending.id]

    @pytest.mark.asyncio
    async def test_filter_object_with_overrides(self, backend):
        await _seed(backend)
        await _seed(backend)
        query = EntryFilter(limit=1)

        assert len(await backend.adapter.list(query)) == 1
        assert len(await backend.adapter.list(query, limit=None)) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("criteria", [{"order_by": "belief"}, {"limit": -1}])
    async def test_invalid_criteria(self, backend, criteria):
        with pytest.raises(ValidationError):
            await backend.adapter.list(**criteria)

    @pytest.mark.asyncio
    async def test_list_returns_copies(self, backend):
        entry = await _seed(backend)
        listed = await backend.adapter.list()
        listed[0].belief = "changed"

        assert (await backend.adapter.get_by_id(entry.id)).belief == "I'm worthless"


class TestGetById:
    @pytest.mark.asyncio
    async def test_missing_returns_none(self, backend):
        assert await backend.adapter.get_by_id("nope") is None

    @pytest.mark.asyncio
    async def test_clear_removes_everything(self, backend):
        await _seed(backend)
        await backend.adapter.clear()
        assert await backend.adapter.list(is_deleted=None) == []


class _OffsetClock:
    """Reports now in a +02:00 offset rather than UTC."""

    def now_iso(self):
        return "2025-09-11T02:00:00+02:00"


@pytest.mark.asyncio
async def test_clock_readings_are_stored_in_utc():
    adapter = MemoryEntriesAdapter(_OffsetClock())

    entry = await adapter.create(adversity="Lost my job", belief="I'm worthless")

    assert entry.created_at == T0
    assert entry.updated_at == T0
    assert entry.dirty_since == T0
