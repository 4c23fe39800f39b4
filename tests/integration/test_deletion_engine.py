"""
Integration tests for the stream deletion engine.

Runs the full trash -> closure -> linked events -> retention -> prune
pipeline against real tenant databases.

Tests cover:
- Trash then hard delete
- Validation failures leave the data untouched
- Merge into parent and detach per deletion mode
- Attachment removal (and its failures) in the background
- Recovery by re-running an interrupted deletion
- Notification order
"""

import sqlite3

import pytest

from dbaas.streamdb_server.config import AuditConfig, DeletionMode
from dbaas.streamdb_server.deletion import ChangeNotifier, NotificationKind, StreamDeletionEngine
from dbaas.streamdb_server.errors import (
    ForbiddenError,
    InvalidOperationError,
    InvalidStateError,
    MissingDispositionError,
    NotFoundError,
    UnexpectedError,
)


def make_engine(streams, events, attachments, mode=DeletionMode.KEEP_NOTHING, force_history=False):
    audit = AuditConfig(deletion_mode=mode, force_keep_history=force_history)
    return StreamDeletionEngine(streams, events, attachments, audit)


async def build_tree(streams, tenant_id):
    """A -> A/B -> A/B/C, plus an unrelated root X."""
    await streams.create_stream(tenant_id, "A", stream_id="A")
    await streams.create_stream(tenant_id, "B", stream_id="A/B", parent_id="A")
    await streams.create_stream(tenant_id, "C", stream_id="A/B/C", parent_id="A/B")
    await streams.create_stream(tenant_id, "X", stream_id="X")


async def trash_then_delete(engine, tenant_id, stream_id, merge):
    await engine.delete(tenant_id, stream_id)
    outcome = await engine.delete(tenant_id, stream_id, merge)
    await engine.close()
    return outcome


class DenyAll:
    async def can_delete_stream(self, stream_id):
        return False


class TestTrashAndDelete:
    """First delete trashes, second delete removes the subtree."""

    @pytest.mark.asyncio
    async def test_first_delete_trashes(self, streams, events, attachments, tenant_id):
        await build_tree(streams, tenant_id)
        engine = make_engine(streams, events, attachments)

        outcome = await engine.delete(tenant_id, "A/B", actor="user:a")

        assert outcome.trashed is True
        assert outcome.result["stream"]["id"] == "A/B"
        assert outcome.result["stream"]["trashed"] is True
        stream = await streams.get_stream(tenant_id, "A/B")
        assert stream.trashed is True
        assert stream.modified_by == "user:a"
        assert [n.kind for n in outcome.notifications] == [NotificationKind.STREAMS_CHANGED]

    @pytest.mark.asyncio
    async def test_second_delete_removes_closure(self, streams, events, attachments, tenant_id):
        await build_tree(streams, tenant_id)
        engine = make_engine(streams, events, attachments)

        outcome = await trash_then_delete(engine, tenant_id, "A/B", None)

        assert outcome.trashed is False
        assert outcome.result == {"streamDeletion": {"id": "A/B"}}
        assert outcome.closure == ["A/B", "A/B/C"]
        assert outcome.retention.linked_events == 0
        assert outcome.retention.events_deleted == 0
        assert [s.id for s in await streams.find_streams(tenant_id)] == ["A", "X"]
        deleted_ids = {d.id for d in await streams.find_deletions(tenant_id)}
        assert deleted_ids == {"A/B", "A/B/C"}
        assert [n.kind for n in outcome.notifications] == [NotificationKind.STREAMS_CHANGED]


class TestValidation:
    """Rejected requests do not mutate anything."""

    @pytest.mark.asyncio
    async def test_missing_disposition(self, streams, events, attachments, tenant_id):
        await build_tree(streams, tenant_id)
        event = await events.create_event(tenant_id, ["A/B/C"], type="note/txt")
        engine = make_engine(streams, events, attachments)
        await engine.delete(tenant_id, "A/B")

        with pytest.raises(MissingDispositionError):
            await engine.delete(tenant_id, "A/B")

        assert await streams.get_stream(tenant_id, "A/B/C") is not None
        assert (await events.get_event(tenant_id, event.id)).stream_ids == ["A/B/C"]

    @pytest.mark.asyncio
    async def test_merge_on_root_rejected(self, streams, events, attachments, tenant_id):
        await build_tree(streams, tenant_id)
        engine = make_engine(streams, events, attachments)
        await engine.delete(tenant_id, "A")

        with pytest.raises(InvalidOperationError):
            await engine.delete(tenant_id, "A", True)

        assert len(await streams.find_streams(tenant_id)) == 4

    @pytest.mark.asyncio
    async def test_system_stream_rejected(self, streams, events, attachments, tenant_id):
        engine = make_engine(streams, events, attachments)
        with pytest.raises(InvalidOperationError):
            await engine.delete(tenant_id, ":_system:account")

    @pytest.mark.asyncio
    async def test_unknown_stream(self, streams, events, attachments, tenant_id):
        engine = make_engine(streams, events, attachments)
        with pytest.raises(NotFoundError) as exc_info:
            await engine.delete(tenant_id, "missing")
        assert exc_info.value.resource_type == "stream"

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, streams, events, attachments):
        engine = make_engine(streams, events, attachments)
        with pytest.raises(NotFoundError) as exc_info:
            await engine.delete("no_such_tenant", "A")
        assert exc_info.value.resource_type == "tenant"

    @pytest.mark.asyncio
    async def test_forbidden(self, streams, events, attachments, tenant_id):
        await build_tree(streams, tenant_id)
        engine = make_engine(streams, events, attachments)

        with pytest.raises(ForbiddenError):
            await engine.delete(tenant_id, "A/B", access=DenyAll())

        assert (await streams.get_stream(tenant_id, "A/B")).trashed is False

    @pytest.mark.asyncio
    async def test_cycle_is_invalid_state(self, streams, events, attachments, tenant_id):
        await streams.create_stream(tenant_id, "x", stream_id="x")
        await streams.create_stream(tenant_id, "y", stream_id="y", parent_id="x")
        await streams.update_stream(tenant_id, "x", {"parent_id": "y"})
        engine = make_engine(streams, events, attachments)
        await engine.delete(tenant_id, "y")

        with pytest.raises(InvalidStateError):
            await engine.delete(tenant_id, "y", False)

        assert len(await streams.find_streams(tenant_id)) == 2


class TestMergeIntoParent:
    @pytest.mark.asyncio
    async def test_events_move_to_parent(self, streams, events, attachments, tenant_id):
        await build_tree(streams, tenant_id)
        e2 = await events.create_event(tenant_id, ["A/B"], type="note/txt")
        deep = await events.create_event(tenant_id, ["A/B/C", "X"], type="note/txt")
        other = await events.create_event(tenant_id, ["X"], type="note/txt")
        engine = make_engine(streams, events, attachments)

        outcome = await trash_then_delete(engine, tenant_id, "A/B", True)

        assert (await events.get_event(tenant_id, e2.id)).stream_ids == ["A"]
        assert (await events.get_event(tenant_id, deep.id)).stream_ids == ["A", "X"]
        assert (await events.get_event(tenant_id, other.id)).stream_ids == ["X"]
        assert await events.find_deletions(tenant_id) == []
        assert await events.find_history(tenant_id, e2.id) == []
        assert [n.kind for n in outcome.notifications] == [
            NotificationKind.EVENTS_CHANGED,
            NotificationKind.STREAMS_CHANGED,
        ]

    @pytest.mark.asyncio
    async def test_event_already_in_parent(self, streams, events, attachments, tenant_id):
        await build_tree(streams, tenant_id)
        event = await events.create_event(tenant_id, ["X", "A", "A/B"], type="note/txt")
        engine = make_engine(streams, events, attachments)

        await trash_then_delete(engine, tenant_id, "A/B", True)

        assert (await events.get_event(tenant_id, event.id)).stream_ids == ["X", "A"]

    @pytest.mark.asyncio
    async def test_forced_history(self, streams, events, attachments, tenant_id):
        await build_tree(streams, tenant_id)
        event = await events.create_event(tenant_id, ["A/B/C"], type="note/txt", content="c")
        engine = make_engine(streams, events, attachments, force_history=True)

        outcome = await trash_then_delete(engine, tenant_id, "A/B", True)

        [version] = await events.find_history(tenant_id, event.id)
        assert version.stream_ids == ["A/B/C"]
        assert version.content == "c"
        assert (await events.get_event(tenant_id, event.id)).stream_ids == ["A"]
        assert outcome.retention.history_versions == 1


class TestDetachAndDelete:
    async def seed(self, events, tenant_id):
        """e3 only in the subtree (with history), e4 shared with X."""
        e3 = await events.create_event(
            tenant_id, ["A/B", "A/B/C"], type="note/txt", content="v1",
            actor="user:a", created_at=1000,
        )
        await events.update_event(
            tenant_id, e3.id, {"content": "v2"}, actor="user:b",
            keep_history=True, updated_at=2000,
        )
        e4 = await events.create_event(
            tenant_id, ["A/B", "X"], type="note/txt", content="v1",
            actor="user:a", created_at=1000,
        )
        await events.update_event(
            tenant_id, e4.id, {"content": "v2"}, actor="user:b",
            keep_history=True, updated_at=2000,
        )
        return e3, e4

    @pytest.mark.asyncio
    async def test_keep_nothing(self, streams, events, attachments, tenant_id):
        await build_tree(streams, tenant_id)
        e3, e4 = await self.seed(events, tenant_id)
        engine = make_engine(streams, events, attachments, mode=DeletionMode.KEEP_NOTHING)

        outcome = await trash_then_delete(engine, tenant_id, "A/B", False)

        assert await events.get_event(tenant_id, e3.id) is None
        assert await events.find_history(tenant_id, e3.id) == []
        [tombstone] = await events.find_deletions(tenant_id)
        assert tombstone.id == e3.id
        assert tombstone.content is None
        assert tombstone.modified_by is None

        survivor = await events.get_event(tenant_id, e4.id)
        assert survivor.stream_ids == ["X"]
        assert survivor.content == "v2"
        assert len(await events.find_history(tenant_id, e4.id)) == 1
        assert outcome.retention.events_deleted == 1
        assert [n.kind for n in outcome.notifications] == [
            NotificationKind.EVENTS_CHANGED,
            NotificationKind.STREAMS_CHANGED,
        ]

    @pytest.mark.asyncio
    async def test_keep_authors(self, streams, events, attachments, tenant_id):
        await build_tree(streams, tenant_id)
        e3, e4 = await self.seed(events, tenant_id)
        engine = make_engine(streams, events, attachments, mode=DeletionMode.KEEP_AUTHORS)

        await trash_then_delete(engine, tenant_id, "A/B", False)

        for event in (e3, e4):
            [version] = await events.find_history(tenant_id, event.id)
            assert version.content is None
            assert version.stream_ids == []
            assert version.modified_by == "user:a"

        [tombstone] = await events.find_deletions(tenant_id)
        assert tombstone.id == e3.id
        assert tombstone.content is None
        assert tombstone.modified_by == "user:b"
        assert (await events.get_event(tenant_id, e4.id)).content == "v2"

    @pytest.mark.asyncio
    async def test_keep_everything(self, streams, events, attachments, tenant_id):
        await build_tree(streams, tenant_id)
        e3, e4 = await self.seed(events, tenant_id)
        descriptor = await attachments.save_attachment(tenant_id, "evt-file", "a.jpg", b"abc")
        with_file = await events.create_event(
            tenant_id, ["A/B/C"], type="picture/attached",
            event_id="evt-file", attachments=[descriptor],
        )
        before = [await events.get_event(tenant_id, e.id) for e in (e3, e4, with_file)]
        engine = make_engine(streams, events, attachments, mode=DeletionMode.KEEP_EVERYTHING)

        outcome = await trash_then_delete(engine, tenant_id, "A/B", False)

        after = [await events.get_event(tenant_id, e.id) for e in (e3, e4, with_file)]
        assert after == before
        assert await events.find_deletions(tenant_id) == []
        assert [v.content for v in await events.find_history(tenant_id, e3.id)] == ["v1"]
        assert [v.content for v in await events.find_history(tenant_id, e4.id)] == ["v1"]
        assert attachments.event_dir(tenant_id, "evt-file").exists()
        assert outcome.retention.events_deleted == 0
        assert [s.id for s in await streams.find_streams(tenant_id)] == ["A", "X"]
        assert [n.kind for n in outcome.notifications] == [NotificationKind.STREAMS_CHANGED]

    @pytest.mark.asyncio
    async def test_attachments_removed(self, streams, events, attachments, tenant_id):
        await build_tree(streams, tenant_id)
        inside = await attachments.save_attachment(tenant_id, "evt-in", "a.jpg", b"abc")
        shared = await attachments.save_attachment(tenant_id, "evt-shared", "b.jpg", b"def")
        await events.create_event(
            tenant_id, ["A/B/C"], type="picture/attached", event_id="evt-in", attachments=[inside]
        )
        await events.create_event(
            tenant_id, ["A/B", "X"], type="picture/attached",
            event_id="evt-shared", attachments=[shared],
        )
        engine = make_engine(streams, events, attachments)

        outcome = await trash_then_delete(engine, tenant_id, "A/B", False)

        assert not attachments.event_dir(tenant_id, "evt-in").exists()
        assert attachments.event_dir(tenant_id, "evt-shared").exists()
        assert outcome.retention.attachments_scheduled == 1
        assert engine.reaper.pending_count == 0

    @pytest.mark.asyncio
    async def test_attachment_failure_does_not_fail_deletion(
        self, streams, events, attachments, tenant_id, monkeypatch
    ):
        await build_tree(streams, tenant_id)
        descriptor = await attachments.save_attachment(tenant_id, "evt-in", "a.jpg", b"abc")
        await events.create_event(
            tenant_id, ["A/B"], type="picture/attached", event_id="evt-in", attachments=[descriptor]
        )

        async def broken_remove(tenant_id, event_id):
            raise PermissionError("read-only filesystem")

        monkeypatch.setattr(attachments, "remove_all_for_event", broken_remove)
        engine = make_engine(streams, events, attachments)

        outcome = await trash_then_delete(engine, tenant_id, "A/B", False)

        assert outcome.result == {"streamDeletion": {"id": "A/B"}}
        assert await events.get_event(tenant_id, "evt-in") is None


class TestRecovery:
    """An interrupted deletion is completed by re-issuing it."""

    @pytest.mark.asyncio
    async def test_rerun_after_stream_phase_failure(
        self, streams, events, attachments, tenant_id, monkeypatch
    ):
        await build_tree(streams, tenant_id)
        event = await events.create_event(tenant_id, ["A/B"], type="note/txt")
        engine = make_engine(streams, events, attachments)
        await engine.delete(tenant_id, "A/B")

        original = streams.delete_streams

        async def failing(tenant_id, stream_ids):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(streams, "delete_streams", failing)
        with pytest.raises(UnexpectedError) as exc_info:
            await engine.delete(tenant_id, "A/B", False)
        assert exc_info.value.phase == "streams"
        assert await events.get_event(tenant_id, event.id) is None
        assert await streams.get_stream(tenant_id, "A/B") is not None

        monkeypatch.setattr(streams, "delete_streams", original)
        outcome = await engine.delete(tenant_id, "A/B", False)
        await engine.close()

        assert outcome.result == {"streamDeletion": {"id": "A/B"}}
        assert await streams.get_stream(tenant_id, "A/B") is None
        assert [n.kind for n in outcome.notifications] == [NotificationKind.STREAMS_CHANGED]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("retry_merge", [False, None, True])
    async def test_rerun_sweeps_streamless_events(
        self, streams, events, attachments, tenant_id, monkeypatch, retry_merge
    ):
        """The retry finishes the sweep whatever merge choice it carries."""
        await build_tree(streams, tenant_id)
        doomed = await events.create_event(tenant_id, ["A/B/C"], type="note/txt")
        survivor = await events.create_event(tenant_id, ["A/B", "X"], type="note/txt")
        engine = make_engine(streams, events, attachments)
        await engine.delete(tenant_id, "A/B")

        original = events.delete_streamless_events

        async def failing(tenant_id, mode):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(events, "delete_streamless_events", failing)
        with pytest.raises(UnexpectedError) as exc_info:
            await engine.delete(tenant_id, "A/B", False)
        assert exc_info.value.phase == "events"
        assert (await events.get_event(tenant_id, doomed.id)).stream_ids == []

        monkeypatch.setattr(events, "delete_streamless_events", original)
        outcome = await engine.delete(tenant_id, "A/B", retry_merge)
        await engine.close()

        assert await events.get_event(tenant_id, doomed.id) is None
        assert (await events.get_event(tenant_id, survivor.id)).stream_ids == ["X"]
        assert outcome.retention.events_deleted == 1
        assert [s.id for s in await streams.find_streams(tenant_id)] == ["A", "X"]
        assert [n.kind for n in outcome.notifications] == [
            NotificationKind.EVENTS_CHANGED,
            NotificationKind.STREAMS_CHANGED,
        ]

    @pytest.mark.asyncio
    async def test_pruning_is_idempotent(self, streams, events, attachments, tenant_id):
        await build_tree(streams, tenant_id)
        engine = make_engine(streams, events, attachments)
        await trash_then_delete(engine, tenant_id, "A", None)

        removed = await engine.pruner.delete_streams(
            tenant_id, ["A", "A/B", "A/B/C"], ChangeNotifier(tenant_id)
        )

        assert removed == 0
        assert {d.id for d in await streams.find_deletions(tenant_id)} == {"A", "A/B", "A/B/C"}
