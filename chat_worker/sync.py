"""
Reconciliation between the coordination store and the agent runtime.

The registry, the coordination store's session records and the agent
runtime's own session list drift apart: the process restarts, sessions are
created directly in the agent runtime, sessions are deleted out of band.
A reconciliation pass compares full lists from both sides and writes the
difference back to the coordination store.

Design:
1. ``calculate_sync_plan`` is pure and idempotent: applying a plan and
   recalculating yields an empty plan.
2. Writes are executed in small batches with a pause between batches.
3. The sync cursor only advances after a pass that wrote something and hit
   no error; an empty pass writes nothing at all.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Awaitable,
    Callable,
    Collection,
    Dict,
    List,
    Optional,
    Sequence,
)

from .ports import ActiveSessionRecord, ModelInfo, RemoteSessionInfo

if TYPE_CHECKING:
    from .sessions import SessionRegistry

logger = logging.getLogger(__name__)


def now_ms() -> float:
    """Current time in milliseconds, the coordination store's time unit."""
    return time.time() * 1000


class ModelCache:
    """Model list cached for ``ttl`` seconds."""

    def __init__(
        self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic
    ):
        self.ttl = ttl
        self._clock = clock
        self._models: Optional[List[ModelInfo]] = None
        self._fetched_at = 0.0

    def get(self) -> Optional[List[ModelInfo]]:
        if self._models is None:
            return None
        if self._clock() - self._fetched_at > self.ttl:
            return None
        return list(self._models)

    def put(self, models: Sequence[ModelInfo]) -> None:
        self._models = list(models)
        self._fetched_at = self._clock()

    def invalidate(self) -> None:
        self._models = None


# =============================================================================
# Plan calculation (pure)
# =============================================================================


@dataclass(frozen=True)
class NameUpdate:
    chat_session_id: str
    new_name: str


@dataclass(frozen=True)
class Deletion:
    chat_session_id: str


@dataclass(frozen=True)
class NewSession:
    remote_session_id: str
    title: Optional[str] = None


@dataclass
class SyncPlan:
    name_updates: List[NameUpdate] = field(default_factory=list)
    deletions: List[Deletion] = field(default_factory=list)
    new_sessions: List[NewSession] = field(default_factory=list)

    @property
    def total(self) -> int:
        return (
            len(self.name_updates)
            + len(self.deletions)
            + len(self.new_sessions)
        )

    def is_empty(self) -> bool:
        return self.total == 0


def calculate_sync_plan(
    remote_sessions: Sequence[RemoteSessionInfo],
    store_sessions: Sequence[ActiveSessionRecord],
    ignore_remote_ids: Collection[str] = (),
) -> SyncPlan:
    """Work out which writes bring the coordination store in line.

    Remote sessions in ``ignore_remote_ids`` are never proposed as new: they
    are bound to a chat session whose binding the store has not recorded yet.
    """
    plan = SyncPlan()
    remote_by_id: Dict[str, RemoteSessionInfo] = {
        s.id: s for s in remote_sessions
    }
    store_by_remote_id: Dict[str, ActiveSessionRecord] = {
        s.remote_session_id: s for s in store_sessions if s.remote_session_id
    }

    for record in store_sessions:
        if not record.remote_session_id:
            continue
        remote = remote_by_id.get(record.remote_session_id)

        if remote is None:
            if not record.deleted_in_opencode:
                plan.deletions.append(Deletion(record.chat_session_id))
            continue

        if remote.title and (
            record.name != remote.title or record.last_synced_name_at is None
        ):
            plan.name_updates.append(
                NameUpdate(record.chat_session_id, remote.title)
            )

    for remote in remote_sessions:
        if remote.id in ignore_remote_ids:
            continue
        if remote.id not in store_by_remote_id:
            plan.new_sessions.append(NewSession(remote.id, remote.title))

    return plan


def apply_plan(
    plan: SyncPlan,
    store_sessions: Sequence[ActiveSessionRecord],
    synced_at: float = 0.0,
) -> List[ActiveSessionRecord]:
    """Simulate the effect of ``plan`` on the store's records."""
    by_chat_id = {
        s.chat_session_id: s.model_copy() for s in store_sessions
    }
    for update in plan.name_updates:
        record = by_chat_id.get(update.chat_session_id)
        if record is not None:
            record.name = update.new_name
            record.last_synced_name_at = synced_at
    for deletion in plan.deletions:
        record = by_chat_id.get(deletion.chat_session_id)
        if record is not None:
            record.deleted_in_opencode = True
    for new in plan.new_sessions:
        chat_id = f'new-{new.remote_session_id}'
        by_chat_id[chat_id] = ActiveSessionRecord(
            chat_session_id=chat_id,
            remote_session_id=new.remote_session_id,
            name=new.title,
            last_synced_name_at=synced_at,
        )
    return list(by_chat_id.values())


def validate_idempotency(
    plan: SyncPlan,
    remote_sessions: Sequence[RemoteSessionInfo],
    store_sessions: Sequence[ActiveSessionRecord],
    ignore_remote_ids: Collection[str] = (),
) -> bool:
    """True if applying ``plan`` leaves nothing more to do."""
    after = apply_plan(plan, store_sessions, synced_at=now_ms())
    return calculate_sync_plan(
        remote_sessions, after, ignore_remote_ids
    ).is_empty()


def infer_default_model(
    models: Sequence[ModelInfo],
    store_sessions: Sequence[ActiveSessionRecord] = (),
) -> str:
    """Model recorded for sessions discovered in the agent runtime."""
    if models:
        return models[0].id
    recent = sorted(
        (s for s in store_sessions if s.model),
        key=lambda s: s.created_at or 0,
        reverse=True,
    )
    return recent[0].model if recent else ''


# =============================================================================
# Execution
# =============================================================================


@dataclass
class SyncResult:
    name_updates: int = 0
    deletions: int = 0
    new_sessions: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    fatal: bool = False
    cursor_advanced: bool = False

    @property
    def writes(self) -> int:
        return self.name_updates + self.deletions + self.new_sessions

    @property
    def ok(self) -> bool:
        return not self.fatal and not self.errors


async def run_in_batches(
    operations: Sequence[Callable[[], Awaitable[None]]],
    batch_size: int = 5,
    delay: float = 0.2,
) -> List[Optional[BaseException]]:
    """Run ``operations`` at most ``batch_size`` at a time.

    Returns one entry per operation: ``None`` on success, the exception
    otherwise.
    """
    batch_size = max(1, batch_size)
    outcomes: List[Optional[BaseException]] = []
    for start in range(0, len(operations), batch_size):
        if start and delay > 0:
            await asyncio.sleep(delay)
        batch = operations[start:start + batch_size]
        results = await asyncio.gather(
            *(op() for op in batch), return_exceptions=True
        )
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
            outcomes.append(
                result if isinstance(result, BaseException) else None
            )
    return outcomes


class SessionSynchronizer:
    """
    Runs reconciliation passes for one worker.

    Collaborators come from the session registry, which owns the agent
    runtime client and the model cache.
    """

    def __init__(
        self,
        registry: 'SessionRegistry',
        batch_size: int = 5,
        batch_delay: float = 0.2,
    ):
        self.registry = registry
        self.store = registry.store
        self.runtime = registry.runtime
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._pass_lock = asyncio.Lock()
        self.last_result: Optional[SyncResult] = None

    async def run_pass(self) -> SyncResult:
        """One reconciliation pass. Overlapping calls run one after another."""
        async with self._pass_lock:
            result = await self._run_pass()
            self.last_result = result
            return result

    async def _run_pass(self) -> SyncResult:
        result = SyncResult()
        pass_started_at = now_ms()

        try:
            cursor = await self.store.get_last_sync_timestamp()
            client = await self.registry.ensure_client()
            remote_sessions, store_sessions = await asyncio.gather(
                self.runtime.list_sessions(client),
                self.store.get_active_sessions(self.registry.worker_id),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f'Sync pass aborted: {e}')
            result.fatal = True
            result.errors.append({'operation': 'sync', 'error': str(e)})
            return result

        logger.debug(
            f'Sync state: {len(remote_sessions)} remote sessions, '
            f'{len(store_sessions)} store sessions (cursor: {cursor})'
        )

        pending = self.registry.unreported_remote_ids()
        plan = calculate_sync_plan(remote_sessions, store_sessions, pending)
        if plan.is_empty():
            logger.debug('No changes detected - sync state is stable')
            return result

        logger.info(
            f'Executing {plan.total} sync operations: '
            f'{len(plan.name_updates)} name updates, '
            f'{len(plan.deletions)} deletions, '
            f'{len(plan.new_sessions)} new sessions'
        )
        if not validate_idempotency(
            plan, remote_sessions, store_sessions, pending
        ):
            logger.warning('Sync plan is not idempotent')

        operations: List[Callable[[], Awaitable[None]]] = []
        labels: List[str] = []

        for update in plan.name_updates:
            operations.append(self._name_update_op(update, result))
            labels.append(f'updateName:{update.chat_session_id}')

        for deletion in plan.deletions:
            operations.append(self._deletion_op(deletion, result))
            labels.append(f'markDeleted:{deletion.chat_session_id}')

        if plan.new_sessions:
            try:
                models = await self.registry.get_models()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f'Could not list models for new sessions: {e}')
                models = []
            default_model = infer_default_model(models, store_sessions)
            for new in plan.new_sessions:
                operations.append(
                    self._creation_op(new, default_model, result)
                )
                labels.append(f'createSession:{new.remote_session_id}')

        outcomes = await run_in_batches(
            operations, self.batch_size, self.batch_delay
        )
        for label, outcome in zip(labels, outcomes):
            if outcome is not None:
                result.errors.append(
                    {'operation': label, 'error': str(outcome)}
                )

        if result.errors:
            logger.warning(
                f'Sync pass finished with {len(result.errors)} errors; '
                f'cursor stays at {cursor}'
            )
        elif cursor is None or pass_started_at > cursor:
            await self.store.update_last_sync_timestamp(pass_started_at)
            result.cursor_advanced = True

        logger.info(
            f'Sync complete: {result.name_updates} updated, '
            f'{result.deletions} deleted, {result.new_sessions} created, '
            f'{len(result.errors)} errors'
        )
        return result

    def _name_update_op(
        self, update: NameUpdate, result: SyncResult
    ) -> Callable[[], Awaitable[None]]:
        async def op() -> None:
            changed = await self.store.update_session_name(
                update.chat_session_id, update.new_name
            )
            result.name_updates += 1
            if changed:
                logger.info(
                    f'Updated: {update.chat_session_id} -> "{update.new_name}"'
                )

        return op

    def _deletion_op(
        self, deletion: Deletion, result: SyncResult
    ) -> Callable[[], Awaitable[None]]:
        async def op() -> None:
            await self.store.mark_session_deleted(deletion.chat_session_id)
            self.registry.forget(deletion.chat_session_id)
            result.deletions += 1
            logger.info(f'Marked deleted: {deletion.chat_session_id}')

        return op

    def _creation_op(
        self, new: NewSession, model: str, result: SyncResult
    ) -> Callable[[], Awaitable[None]]:
        async def op() -> None:
            chat_session_id = await self.store.create_synced_session(
                new.remote_session_id, model, new.title
            )
            result.new_sessions += 1
            logger.info(
                f'Created: {chat_session_id} <- {new.remote_session_id}'
            )

        return op
