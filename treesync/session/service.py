"""Client session: the single processing loop for one tree.

Every command (a local edit, undo/redo, a remote push, a connectivity
change) is admitted into one inbound queue and runs to completion before
the next one starts, so the tree is never mutated by two events at once.
The loop only suspends around transport and storage calls.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from treesync.config import Settings
from treesync.errors import LocalValidationError, PreconditionError, TransportError
from treesync.events.factory import EventFactory
from treesync.events.log import EventLog
from treesync.history.controller import HistoryController, HistoryResult, HistoryStatus
from treesync.models import (
    BatchSubmission,
    EventEnvelope,
    FocusChangedPayload,
    Node,
    NodeAddedPayload,
    NodeRemovedPayload,
    NodeUpdatedPayload,
    ReconciliationResponse,
    TreeSnapshot,
    ZoomChangedPayload,
)
from treesync.session.channel import Notification, NotificationChannel, Subscriber
from treesync.sync.engine import (
    ForkedTree,
    ReconciliationEngine,
    ReconciliationOutcome,
    ReconciliationResult,
)
from treesync.sync.queue import OfflineQueue
from treesync.sync.transport import Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STOP = object()


class ClientSession:
    """Owns the EventLog, history cursor and offline queue of one tree."""

    def __init__(
        self,
        log: EventLog,
        queue: OfflineQueue,
        transport: Transport | None = None,
        settings: Settings | None = None,
        confirmed_version: int | None = None,
    ) -> None:
        if queue.tree_id != log.tree_id:
            raise ValueError("Queue and log belong to different trees")
        self._settings = settings or Settings()
        self._log = log
        self._queue = queue
        self._transport = transport
        self._factory = EventFactory(log.tree_id, self._settings.device_id)
        self._factory.advance_to(max((e.sequence_num for e in queue.peek()), default=0))
        self._history = HistoryController(log, self._factory, self._settings.history_limit)
        self._engine = ReconciliationEngine(self._settings.conflict_granularity)
        self._channel = NotificationChannel()
        self._confirmed_version = (
            log.version - len(queue) if confirmed_version is None else confirmed_version
        )
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self.connected = False

    @classmethod
    async def resume(
        cls,
        queue: OfflineQueue,
        transport: Transport,
        settings: Settings | None = None,
        root_id: str = "root",
    ) -> "ClientSession":
        """Rebuild a session after a restart.

        The tree is replayed from server history up to the last version this
        client had confirmed, then the persisted pending events are applied
        on top. Anything newer on the server is reconciled on the next sync.
        """
        settings = settings or Settings()
        await queue.load()
        confirmed = queue.last_server_version
        history = await transport.fetch_events(queue.tree_id, since=0)

        log = EventLog.for_new_tree(queue.tree_id, root_id, settings.checkpoint_interval)
        own_sequence = 0
        for event in history:
            if event.server_version is not None and event.server_version > confirmed:
                break
            log.append(event.as_remote())
            if event.device_id == settings.device_id:
                own_sequence = max(own_sequence, event.sequence_num)
        confirmed_version = log.version
        for event in queue.peek():
            log.append(event)

        session = cls(log, queue, transport, settings, confirmed_version)
        session._factory.advance_to(own_sequence)
        logger.info(
            "Resumed %s at server version %d with %d pending events",
            queue.tree_id, confirmed, len(queue),
        )
        return session

    # -- Read side ----------------------------------------------------------

    @property
    def tree_id(self) -> str:
        return self._log.tree_id

    @property
    def log(self) -> EventLog:
        return self._log

    @property
    def history(self) -> HistoryController:
        return self._history

    @property
    def queue(self) -> OfflineQueue:
        return self._queue

    @property
    def confirmed_version(self) -> int:
        return self._confirmed_version

    def snapshot(self) -> TreeSnapshot:
        return self._log.store.snapshot()

    def query_node(self, node_id: str) -> Node | None:
        return self._log.store.query_node(node_id)

    def subscribe(self, callback: Subscriber) -> str:
        return self._channel.subscribe(callback)

    def unsubscribe(self, token: str) -> bool:
        return self._channel.unsubscribe(token)

    @property
    def forks(self) -> dict[str, ForkedTree]:
        """Forks split off this tree, restored from storage on resume."""
        return self._queue.forks

    async def name_fork(self, fork_tree_id: str, name: str) -> ForkedTree:
        return await self._submit(lambda: self._handle_name_fork(fork_tree_id, name))

    # -- Loop lifecycle -------------------------------------------------------

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"treesync-{self.tree_id}")

    async def stop(self) -> None:
        """Finish every admitted command, then stop the loop."""
        if self._task is None:
            return
        await self._inbox.put(_STOP)
        await self._task
        self._task = None

    async def __aenter__(self) -> "ClientSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _run(self) -> None:
        while True:
            command = await self._inbox.get()
            if command is _STOP:
                return
            handler, future = command
            if future.cancelled():
                continue
            try:
                result = await handler()
            except Exception as e:
                if not future.cancelled():
                    future.set_exception(e)
            else:
                if not future.cancelled():
                    future.set_result(result)

    async def _submit(self, handler: Callable[[], Awaitable[T]]) -> T:
        if self._task is None:
            raise RuntimeError("Session is not running; call start() first")
        future = asyncio.get_running_loop().create_future()
        await self._inbox.put((handler, future))
        return await future

    # -- User intents -----------------------------------------------------------

    async def create_node(
        self,
        parent_id: str,
        node_id: str,
        name: str = "",
        node_type: str = "node",
        metadata: dict[str, Any] | None = None,
        position: int | None = None,
    ) -> int:
        return await self._submit(lambda: self._apply_local(
            NodeAddedPayload,
            node_id=node_id,
            parent_id=parent_id,
            name=name,
            node_type=node_type,
            metadata=metadata or {},
            position=position,
        ))

    async def edit_node(self, node_id: str, **changes: Any) -> int:
        return await self._submit(
            lambda: self._apply_local(NodeUpdatedPayload, node_id=node_id, changes=changes)
        )

    async def delete_node(self, node_id: str) -> int:
        return await self._submit(
            lambda: self._apply_local(NodeRemovedPayload, node_id=node_id)
        )

    async def focus(self, node_id: str | None) -> int:
        return await self._submit(
            lambda: self._apply_local(FocusChangedPayload, node_id=node_id)
        )

    async def zoom(self, level: float) -> int:
        return await self._submit(lambda: self._apply_local(ZoomChangedPayload, level=level))

    async def undo(self) -> HistoryResult:
        return await self._submit(lambda: self._step("undo", self._history.undo))

    async def redo(self) -> HistoryResult:
        return await self._submit(lambda: self._step("redo", self._history.redo))

    # -- Sync intents -------------------------------------------------------------

    async def go_online(self) -> None:
        if self._transport is None:
            raise RuntimeError("No transport configured")
        await self._submit(self._handle_online)

    async def go_offline(self) -> None:
        await self._submit(self._handle_offline)

    async def sync(self) -> None:
        """Submit pending events now (no-op while offline)."""
        await self._submit(self._flush)

    async def receive_remote(self, events: list[EventEnvelope]) -> None:
        """Admit server-pushed events, in the order the server asserts them."""
        await self._submit(lambda: self._handle_remote(list(events)))

    # -- Handlers (run inside the loop) -------------------------------------------

    async def _apply_local(self, payload_cls: type[BaseModel], **fields: Any) -> int:
        try:
            payload = payload_cls(**fields)
        except ValidationError as e:
            error = PreconditionError(f"Invalid {payload_cls.__name__}: {e}")
            self._reject(payload_cls.__name__, error)
            raise error from e

        event = self._factory.make(payload)
        try:
            version = self._history.dispatch(event)
        except LocalValidationError as e:
            self._factory.rewind(event)
            self._reject(event.event_type, e)
            raise
        await self._after_local(event, version)
        return version

    async def _step(
        self, name: str, action: Callable[[], HistoryResult]
    ) -> HistoryResult:
        try:
            result = action()
        except LocalValidationError as e:
            self._reject(name, e)
            raise
        if result.status is HistoryStatus.APPLIED:
            await self._after_local(result.event, result.version)
        return result

    async def _after_local(self, event: EventEnvelope, version: int) -> None:
        await self._queue.enqueue(event)
        self._channel.publish(Notification(
            "applied", self.tree_id,
            {"event_id": event.event_id, "event_type": event.event_type, "version": version},
        ))
        if self.connected:
            await self._flush()

    def _reject(self, action: str, error: LocalValidationError) -> None:
        self._channel.publish(Notification(
            "rejected", self.tree_id,
            {"action": action, "error": type(error).__name__, "message": str(error)},
        ))

    async def _handle_online(self) -> None:
        self.connected = True
        self._channel.publish(Notification("online", self.tree_id))
        await self._flush()

    async def _handle_offline(self, reason: str = "disconnected") -> None:
        self.connected = False
        self._channel.publish(Notification("offline", self.tree_id, {"reason": reason}))

    async def _handle_name_fork(self, fork_tree_id: str, name: str) -> ForkedTree:
        fork = self.forks.get(fork_tree_id)
        if fork is None:
            raise ValueError(f"Unknown fork: {fork_tree_id}")
        fork.rename(name)
        await self._queue.save_fork(fork)
        return fork

    async def _handle_remote(self, events: list[EventEnvelope]) -> None:
        last = self._queue.last_server_version
        fresh = sorted(
            (e for e in events if e.server_version is not None and e.server_version > last),
            key=lambda e: e.server_version,
        )
        if not fresh:
            return
        expected = list(range(last + 1, last + 1 + len(fresh)))
        if [e.server_version for e in fresh] != expected:
            if self._transport is None or not self.connected:
                logger.warning(
                    "Gap in remote events for %s after version %d; waiting for next sync",
                    self.tree_id, last,
                )
                return
            try:
                fresh = await self._transport.fetch_events(self.tree_id, since=last)
            except TransportError as e:
                await self._handle_offline(str(e))
                return

        pending = self._queue.peek()
        result = self._engine.reconcile(self._log, self._confirmed_version, pending, fresh)
        await self._adopt(result, pending)
        if result.pending and self.connected:
            await self._flush()

    async def _flush(self) -> None:
        if not self.connected or self._transport is None:
            return
        for _ in range(self._settings.max_sync_rounds):
            pending = self._queue.peek()
            batch = BatchSubmission(
                last_known_server_version=self._queue.last_server_version,
                events=pending,
            )
            try:
                response = await self._transport.submit_batch(self.tree_id, batch)
            except TransportError as e:
                logger.warning("Submission for %s failed: %s", self.tree_id, e)
                await self._handle_offline(str(e))
                return

            reply = ReconciliationResponse.from_batch(response)
            if reply.status == "ok":
                await self._queue.acknowledge({e.event_id for e in pending})
                await self._queue.set_server_version(response.new_version)
                self._confirmed_version = self._log.version
                self._channel.publish(Notification(
                    "synced", self.tree_id,
                    {"outcome": "accepted", "server_version": response.new_version},
                ))
                return

            result = self._engine.reconcile(
                self._log, self._confirmed_version, pending, reply.server_events
            )
            await self._adopt(result, pending)
            if not result.pending:
                return
        logger.warning(
            "Gave up syncing %s after %d rounds; %d events stay queued",
            self.tree_id, self._settings.max_sync_rounds, len(self._queue),
        )

    async def _adopt(self, result: ReconciliationResult, pending: list[EventEnvelope]) -> None:
        if result.log is not self._log:
            self._history.rebind(result.log)
            self._log = result.log
        self._confirmed_version = result.confirmed_version

        if result.outcome is ReconciliationOutcome.FORKED:
            # Moved edits must be in a stored fork before the server version advances.
            fork = result.fork
            await self._queue.save_fork(fork, {e.event_id for e in pending})
        if result.server_version is not None:
            await self._queue.set_server_version(result.server_version)

        if result.outcome is ReconciliationOutcome.FORKED:
            self._channel.publish(Notification(
                "forked", self.tree_id,
                {
                    "fork_tree_id": fork.tree_id,
                    "conflicts": [str(c) for c in fork.conflicts],
                    "needs_name": True,
                },
            ))
        else:
            self._channel.publish(Notification(
                "synced", self.tree_id, {"outcome": result.outcome.value},
            ))
