"""Tests for session reconciliation between the store and the agent runtime."""

import asyncio

import pytest

from chat_worker.errors import AgentRuntimeError, CoordinationError
from chat_worker.ids import WorkerId
from chat_worker.ports import ActiveSessionRecord, ModelInfo, RemoteSessionInfo
from chat_worker.sessions import SessionRegistry
from chat_worker.sync import (
    ModelCache,
    SessionSynchronizer,
    calculate_sync_plan,
    infer_default_model,
    now_ms,
    run_in_batches,
    validate_idempotency,
)


@pytest.fixture
def registry(store, runtime, tmp_path):
    return SessionRegistry(
        store, runtime, worker_id=WorkerId('w1'), working_directory=str(tmp_path)
    )


@pytest.fixture
def synchronizer(registry):
    return SessionSynchronizer(registry, batch_size=2, batch_delay=0)


def _record(chat_id, remote_id=None, **fields):
    return ActiveSessionRecord(
        chat_session_id=chat_id, remote_session_id=remote_id, **fields
    )


# ============================================================================
# Plan calculation
# ============================================================================


def test_plan_covers_renames_deletions_and_new_sessions():
    remote = [
        RemoteSessionInfo(id='r1', title='New title'),
        RemoteSessionInfo(id='r3', title='Fresh'),
    ]
    records = [
        _record('c1', 'r1', name='Old title', last_synced_name_at=1.0),
        _record('c2', 'r2', name='Gone'),
        _record('c3'),
    ]

    plan = calculate_sync_plan(remote, records)

    assert [(u.chat_session_id, u.new_name) for u in plan.name_updates] == [
        ('c1', 'New title')
    ]
    assert [d.chat_session_id for d in plan.deletions] == ['c2']
    assert [n.remote_session_id for n in plan.new_sessions] == ['r3']
    assert plan.total == 3
    assert validate_idempotency(plan, remote, records)


def test_never_synced_name_is_written_once():
    remote = [RemoteSessionInfo(id='r1', title='Same')]
    records = [_record('c1', 'r1', name='Same')]
    plan = calculate_sync_plan(remote, records)
    assert len(plan.name_updates) == 1

    records[0].last_synced_name_at = 5.0
    assert calculate_sync_plan(remote, records).is_empty()


def test_untitled_remote_sessions_do_not_rename():
    remote = [RemoteSessionInfo(id='r1')]
    records = [_record('c1', 'r1', name='Keep me')]
    assert calculate_sync_plan(remote, records).is_empty()


def test_already_deleted_records_are_left_alone():
    records = [_record('c1', 'r1', deleted_in_opencode=True)]
    assert calculate_sync_plan([], records).is_empty()


def test_empty_inputs_give_empty_plan():
    assert calculate_sync_plan([], []).is_empty()


def test_ignored_remote_sessions_are_not_proposed():
    remote = [RemoteSessionInfo(id='r1', title='Mine'), RemoteSessionInfo(id='r2')]

    plan = calculate_sync_plan(remote, [], ignore_remote_ids={'r1'})

    assert [n.remote_session_id for n in plan.new_sessions] == ['r2']


def test_infer_default_model():
    models = [ModelInfo(id='a/b', name='B', provider='a')]
    assert infer_default_model(models) == 'a/b'

    records = [
        _record('c1', model='old/model', created_at=1.0),
        _record('c2', model='new/model', created_at=2.0),
    ]
    assert infer_default_model([], records) == 'new/model'
    assert infer_default_model([]) == ''


def test_model_cache_expires():
    now = [0.0]
    cache = ModelCache(ttl=10, clock=lambda: now[0])
    assert cache.get() is None

    cache.put([ModelInfo(id='a/b', name='B', provider='a')])
    now[0] = 5.0
    assert [m.id for m in cache.get()] == ['a/b']

    now[0] = 11.0
    assert cache.get() is None


# ============================================================================
# Batching
# ============================================================================


@pytest.mark.asyncio
async def test_run_in_batches_limits_concurrency():
    active = 0
    peak = 0

    def make(index):
        async def op():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            if index == 4:
                raise CoordinationError('boom')

        return op

    outcomes = await run_in_batches([make(i) for i in range(7)], batch_size=3, delay=0)

    assert peak == 3
    assert len(outcomes) == 7
    assert [i for i, o in enumerate(outcomes) if o is not None] == [4]
    assert isinstance(outcomes[4], CoordinationError)


@pytest.mark.asyncio
async def test_run_in_batches_with_no_operations():
    assert await run_in_batches([], batch_size=3) == []


# ============================================================================
# Reconciliation passes
# ============================================================================


@pytest.mark.asyncio
async def test_pass_writes_then_second_pass_is_silent(synchronizer, store, runtime):
    store.add_record('c1', remote_session_id='r1', name='Old')
    runtime.add_session('r1', 'New')
    runtime.add_session('r2', 'Started in terminal')

    first = await synchronizer.run_pass()

    assert first.ok
    assert first.name_updates == 1
    assert first.new_sessions == 1
    assert first.cursor_advanced
    assert store.records['c1'].name == 'New'
    created = store.records['synced-r2']
    assert created.model == 'anthropic/claude-sonnet'
    assert created.name == 'Started in terminal'
    writes_after_first = store.write_count

    second = await synchronizer.run_pass()

    assert second.ok
    assert second.writes == 0
    assert not second.cursor_advanced
    assert store.write_count == writes_after_first


@pytest.mark.asyncio
async def test_empty_pass_writes_nothing(synchronizer, store):
    result = await synchronizer.run_pass()

    assert result.ok
    assert store.write_count == 0
    assert store.calls['update_last_sync_timestamp'] == 0


@pytest.mark.asyncio
async def test_deletion_forgets_registry_entry(synchronizer, registry, store):
    store.add_record('c1', remote_session_id='r1', name='Old')
    await registry.start_session('c1')
    assert registry.get('c1') is not None

    result = await synchronizer.run_pass()

    assert result.deletions == 1
    assert store.records['c1'].deleted_in_opencode is True
    assert registry.get('c1') is None


@pytest.mark.asyncio
async def test_failed_write_keeps_cursor(synchronizer, store, runtime):
    store.add_record('c1', remote_session_id='r1', name='Old')
    runtime.add_session('r1', 'New')
    runtime.add_session('r2', 'Other')
    store.failures['update_session_name'] = CoordinationError('boom')

    result = await synchronizer.run_pass()

    assert not result.ok
    assert result.errors == [{'operation': 'updateName:c1', 'error': 'boom'}]
    # The other operations of the pass still ran.
    assert result.new_sessions == 1
    assert store.cursor is None
    assert store.calls['update_last_sync_timestamp'] == 0


@pytest.mark.asyncio
async def test_listing_failure_aborts_pass(synchronizer, store, runtime):
    store.add_record('c1', remote_session_id='r1', name='Old')
    runtime.failures['list_sessions'] = AgentRuntimeError('runtime down')

    result = await synchronizer.run_pass()

    assert result.fatal
    assert store.write_count == 0


@pytest.mark.asyncio
async def test_cursor_never_moves_backward(synchronizer, store, runtime):
    future = now_ms() + 1_000_000
    store.cursor = future
    runtime.add_session('r1', 'New')

    result = await synchronizer.run_pass()

    assert result.new_sessions == 1
    assert not result.cursor_advanced
    assert store.cursor == future


@pytest.mark.asyncio
async def test_cursor_advances_past_previous_value(synchronizer, store, runtime):
    store.cursor = 1.0
    runtime.add_session('r1', 'New')

    await synchronizer.run_pass()

    assert store.cursor > 1.0
    assert synchronizer.last_result.cursor_advanced


@pytest.mark.asyncio
async def test_unreported_binding_is_not_synced_as_new(synchronizer, registry, store):
    store.add_record('c1')
    await registry.start_session('c1')
    store.failures['session_ready'] = CoordinationError('offline')
    await registry.process_message('c1', 'a1', 'hi', 'anthropic/claude-sonnet')
    store.failures.clear()

    result = await synchronizer.run_pass()

    assert result.new_sessions == 0
    assert store.calls['create_synced_session'] == 0

    # Once the binding is reported the session is already known to the store.
    await registry.process_message('c1', 'a2', 'again', None)
    assert store.records['c1'].remote_session_id == 'remote-1'

    result = await synchronizer.run_pass()

    assert result.new_sessions == 0
    assert store.calls['create_synced_session'] == 0
