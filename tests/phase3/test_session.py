"""End-to-end tests for ClientSession against the in-process backend."""

import httpx
import pytest

from treesync.errors import NotFoundError, PreconditionError
from treesync.events.log import EventLog
from treesync.history.controller import HistoryStatus
from treesync.session.service import ClientSession
from treesync.sync.queue import OfflineQueue, SqliteQueueStorage
from treesync.sync.transport import HttpTransport
from tests.fixtures import TREE_ID, node_added, server_events


def recorder(session):
    """Subscribe and collect notification kinds."""
    seen = []
    session.subscribe(lambda n: seen.append(n))
    return seen


def kinds(notifications):
    return [n.kind for n in notifications]


class TestLocalEditing:
    async def test_scenario_a_add_then_undo(self, make_session, event_store):
        session = await make_session()
        await session.create_node("root", "1", "A")
        await session.create_node("1", "2", "B")
        assert session.query_node("2").name == "B"

        result = await session.undo()

        assert result.status is HistoryStatus.APPLIED
        assert session.query_node("2") is None
        events = await event_store.get_events(TREE_ID)
        assert [e.intent for e in events] == ["edit", "edit", "undo"]

    async def test_redo_and_nothing_to_undo(self, make_session):
        session = await make_session(online=False)
        assert (await session.undo()).status is HistoryStatus.NOTHING_TO_UNDO
        await session.create_node("root", "1")
        await session.edit_node("1", name="renamed")
        await session.undo()
        assert session.query_node("1").name == ""
        await session.redo()
        assert session.query_node("1").name == "renamed"
        assert (await session.redo()).status is HistoryStatus.NOTHING_TO_REDO

    async def test_focus_zoom_and_delete(self, make_session):
        session = await make_session(online=False)
        await session.create_node("root", "1")
        await session.create_node("1", "2")
        await session.focus("2")
        await session.zoom(2.0)
        await session.delete_node("1")

        snapshot = session.snapshot()
        assert snapshot.focus is None
        assert snapshot.zoom == 2.0
        assert list(snapshot.nodes) == ["root"]

        await session.undo()
        assert session.snapshot().focus == "2"

    async def test_rejection_notifies_and_loop_survives(self, make_session):
        session = await make_session(online=False)
        seen = recorder(session)

        with pytest.raises(NotFoundError):
            await session.create_node("missing", "1")
        with pytest.raises(PreconditionError):
            await session.zoom(-1)
        with pytest.raises(PreconditionError):
            await session.edit_node("root", color="red")

        assert kinds(seen) == ["rejected", "rejected", "rejected"]
        assert seen[0].detail["error"] == "NotFoundError"
        assert len(session.queue) == 0

        await session.create_node("root", "1")
        assert session.query_node("1") is not None
        assert session.queue.peek()[0].sequence_num == 1

    async def test_submit_requires_running_loop(self, queue):
        session = ClientSession(EventLog.for_new_tree(TREE_ID), queue)
        with pytest.raises(RuntimeError):
            await session.create_node("root", "1")
        with pytest.raises(RuntimeError):
            await session.go_online()


class TestNotifications:
    async def test_unsubscribe_by_token(self, make_session):
        session = await make_session(online=False)
        seen = []
        token = session.subscribe(seen.append)
        await session.create_node("root", "1")
        assert session.unsubscribe(token) is True
        assert session.unsubscribe(token) is False
        await session.create_node("root", "2")
        assert kinds(seen) == ["applied"]

    async def test_failing_subscriber_does_not_block_others(self, make_session):
        session = await make_session(online=False)

        def broken(notification):
            raise RuntimeError("boom")

        session.subscribe(broken)
        seen = recorder(session)
        await session.create_node("root", "1")
        assert kinds(seen) == ["applied"]


class TestOffline:
    async def test_scenario_c_queue_then_reconnect(self, make_session, event_store):
        session = await make_session(online=False)
        await session.create_node("root", "5")
        await session.create_node("root", "6")
        assert len(session.queue) == 2
        assert await event_store.get_events(TREE_ID) == []

        await session.go_online()

        assert len(session.queue) == 0
        assert session.queue.last_server_version == 2
        assert session.confirmed_version == session.log.version
        assert session.log.store.children_of("root") == ["5", "6"]
        stored = await event_store.get_events(TREE_ID)
        assert [e.payload["node_id"] for e in stored] == ["5", "6"]

    async def test_transport_failure_goes_offline_and_keeps_events(self, queue, settings):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
            base_url="http://test",
        )
        transport = HttpTransport("http://test", max_retries=2, backoff=0, client=client)
        async with ClientSession(EventLog.for_new_tree(TREE_ID), queue, transport, settings) as session:
            seen = recorder(session)
            await session.go_online()
            await session.create_node("root", "1")

            assert not session.connected
            assert "offline" in kinds(seen)
            assert len(session.queue) == 1
            assert session.query_node("1") is not None
        await client.aclose()


class TestTwoDevices:
    async def test_concurrent_adds_merge(self, make_session, event_store):
        a = await make_session("device-a")
        b = await make_session("device-b", online=False)

        await a.create_node("root", "1", "from a")
        await b.create_node("root", "2", "from b")
        await b.go_online()

        assert b.log.store.children_of("root") == ["1", "2"]
        assert len(b.queue) == 0
        assert b.queue.last_server_version == 2

        await a.sync()
        assert a.log.store.children_of("root") == ["1", "2"]
        assert a.snapshot().nodes == b.snapshot().nodes

    async def test_scenario_b_conflict_forks(self, make_session):
        a = await make_session("device-a")
        b = await make_session("device-b")
        await a.create_node("root", "1", "shared")
        await b.sync()
        assert b.query_node("1") is not None

        await b.go_offline()
        await b.edit_node("1", name="x")
        await a.delete_node("1")
        seen = recorder(b)
        await b.go_online()

        forked = [n for n in seen if n.kind == "forked"]
        assert len(forked) == 1
        fork_id = forked[0].detail["fork_tree_id"]
        assert forked[0].detail["needs_name"] is True

        assert b.query_node("1") is None
        assert len(b.queue) == 0
        assert b.history.depth == 0
        fork = b.forks[fork_id]
        assert fork.log.store.get_node(fork.id_map["1"]).name == "x"

        await b.name_fork(fork_id, "b's version")
        assert fork.log.store.title == "b's version"
        with pytest.raises(ValueError):
            await b.name_fork("unknown", "x")

    async def test_local_undo_after_merge(self, make_session):
        a = await make_session("device-a")
        b = await make_session("device-b", online=False)
        await b.create_node("root", "2")
        await a.create_node("root", "1")
        await b.go_online()

        await b.undo()

        assert b.query_node("2") is None
        assert b.query_node("1") is not None


class TestRemotePush:
    async def test_receive_remote_fast_forwards(self, make_session):
        session = await make_session(online=False)
        pushed = server_events(node_added("7", name="pushed"), node_added("8"))

        await session.receive_remote(pushed)
        await session.receive_remote(pushed[:1])

        assert session.log.store.children_of("root") == ["7", "8"]
        assert session.queue.last_server_version == 2
        assert session.history.depth == 0

    async def test_gap_while_offline_is_ignored(self, make_session):
        session = await make_session(online=False)
        await session.receive_remote(server_events(node_added("7"), start=3))
        assert session.query_node("7") is None
        assert session.queue.last_server_version == 0

    async def test_gap_while_online_fetches_history(self, make_session, event_store):
        a = await make_session("device-a")
        b = await make_session("device-b")
        await a.create_node("root", "1")
        await a.create_node("root", "2")

        latest = await event_store.get_events(TREE_ID, since=1)
        await b.receive_remote(latest)

        assert b.log.store.children_of("root") == ["1", "2"]
        assert b.queue.last_server_version == 2

    async def test_remote_push_rebases_pending_edits(self, make_session):
        session = await make_session(online=False)
        await session.create_node("root", "5")

        await session.receive_remote(server_events(node_added("7")))

        assert session.log.store.children_of("root") == ["7", "5"]
        assert len(session.queue) == 1
        assert session.confirmed_version == 1


class TestResume:
    async def test_resume_restores_confirmed_and_pending(self, db, transport, settings):
        queue = OfflineQueue(TREE_ID, SqliteQueueStorage(db))
        await queue.load()
        async with ClientSession(EventLog.for_new_tree(TREE_ID), queue, transport, settings) as session:
            await session.go_online()
            await session.create_node("root", "1")
            await session.create_node("root", "2")
            await session.go_offline()
            await session.create_node("1", "3")

        restored = await ClientSession.resume(
            OfflineQueue(TREE_ID, SqliteQueueStorage(db)), transport, settings
        )

        assert restored.confirmed_version == 2
        assert len(restored.queue) == 1
        assert restored.log.store.children_of("1") == ["3"]

        async with restored:
            await restored.go_online()
            assert len(restored.queue) == 0
            assert restored.queue.last_server_version == 3

    async def test_fork_survives_restart(self, db, make_session, transport, settings):
        a = await make_session("device-a")
        b_settings = settings.model_copy(update={"device_id": "device-b"})
        queue = OfflineQueue(TREE_ID, SqliteQueueStorage(db))
        await queue.load()
        await a.create_node("root", "1", "shared")

        async with ClientSession(EventLog.for_new_tree(TREE_ID), queue, transport, b_settings) as b:
            await b.go_online()
            await b.go_offline()
            await b.edit_node("1", name="x")
            await a.delete_node("1")
            await b.go_online()
            (fork_id,) = b.forks
            await b.name_fork(fork_id, "mine")

        restored = await ClientSession.resume(
            OfflineQueue(TREE_ID, SqliteQueueStorage(db)), transport, b_settings
        )

        assert restored.query_node("1") is None
        assert len(restored.queue) == 0
        fork = restored.forks[fork_id]
        assert fork.name == "mine"
        assert fork.log.store.get_node(fork.id_map["1"]).name == "x"
        assert fork.conflicts[0].reason == "removed_remotely"
