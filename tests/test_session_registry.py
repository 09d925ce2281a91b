"""
Tests for the session registry: lazy remote session creation, streaming,
and failure containment.
"""

import asyncio

import pytest

from chat_worker.errors import (
    CoordinationError,
    SessionInitTimeout,
    StateAssertionError,
)
from chat_worker.ids import WorkerId
from chat_worker.ports import PromptChunk
from chat_worker.sessions import Session, SessionRegistry


@pytest.fixture
def registry(store, runtime, tmp_path):
    return SessionRegistry(
        store, runtime, worker_id=WorkerId('w1'), working_directory=str(tmp_path)
    )


# ============================================================================
# Remote session creation
# ============================================================================


@pytest.mark.asyncio
async def test_remote_session_created_once(registry, store, runtime):
    await registry.start_session('c1')
    assert registry.get('c1').remote_session_id is None

    await registry.process_message('c1', 'a1', 'hi', 'anthropic/claude-sonnet')
    await registry.process_message('c1', 'a2', 'again', None)

    assert runtime.calls['create_session'] == 1
    assert registry.get('c1').remote_session_id == 'remote-1'
    assert registry.get('c1').is_initializing is False
    assert store.calls['session_ready'] == 1
    assert [c['message_id'] for c in store.completed] == ['a1', 'a2']


@pytest.mark.asyncio
async def test_session_ready_precedes_first_chunk(registry, store):
    await registry.start_session('c1')
    await registry.process_message('c1', 'a1', 'hi', 'anthropic/claude-sonnet')

    names = store.names()
    assert names.index('session_ready') < names.index('write_chunk')
    ready_args = store.call_log[names.index('session_ready')][1]
    assert ready_args == ('c1', 'remote-1')


@pytest.mark.asyncio
async def test_chunks_streamed_in_order(registry, store):
    await registry.start_session('c1')
    await registry.process_message('c1', 'a1', 'hi', 'anthropic/claude-sonnet')

    assert [(chunk, seq) for _, _, chunk, seq in store.chunks] == [
        ('Hello', 0),
        (' world', 1),
    ]
    assert store.completed[0]['content'] == 'Hello world'
    assert store.completed[0]['reasoning'] is None


@pytest.mark.asyncio
async def test_concurrent_messages_in_one_session_run_in_order(
    registry, store, runtime
):
    await registry.start_session('c1')
    await asyncio.gather(
        registry.process_message('c1', 'a1', 'one', 'anthropic/claude-sonnet'),
        registry.process_message('c1', 'a2', 'two', 'anthropic/claude-sonnet'),
    )

    assert runtime.calls['create_session'] == 1
    assert [c['message_id'] for c in store.completed] == ['a1', 'a2']
    assert [m for _, m, _, _ in store.chunks] == ['a1', 'a1', 'a2', 'a2']


# ============================================================================
# Restore and model selection
# ============================================================================


@pytest.mark.asyncio
async def test_restores_existing_remote_binding(registry, store, runtime):
    store.add_record('c1', remote_session_id='remote-old', model='openai/gpt-4o')
    runtime.add_session('remote-old')

    session = await registry.start_session('c1')
    assert session.remote_session_id == 'remote-old'
    assert session.model == 'openai/gpt-4o'

    await registry.process_message('c1', 'a1', 'hi', None)

    assert runtime.calls['create_session'] == 0
    assert store.calls['session_ready'] == 0
    send = [args for name, args in runtime.call_log if name == 'send_prompt']
    assert send == [('remote-old', 'hi', 'openai/gpt-4o')]


@pytest.mark.asyncio
async def test_start_session_is_idempotent(registry, store):
    first = await registry.start_session('c1')
    second = await registry.start_session('c1')
    assert first is second
    assert len(registry) == 1
    assert store.calls['get_active_sessions'] == 1


@pytest.mark.asyncio
async def test_model_override_keeps_remote_session(registry, runtime):
    await registry.start_session('c1')
    await registry.process_message('c1', 'a1', 'hi', 'anthropic/claude-sonnet')
    await registry.process_message('c1', 'a2', 'hi', 'openai/gpt-4o')

    assert runtime.calls['create_session'] == 1
    send = [args for name, args in runtime.call_log if name == 'send_prompt']
    assert [args[2] for args in send] == ['anthropic/claude-sonnet', 'openai/gpt-4o']
    assert registry.get('c1').model == 'openai/gpt-4o'


@pytest.mark.asyncio
async def test_reasoning_and_other_parts_are_not_streamed(registry, store, runtime):
    runtime.prompt_output = [
        PromptChunk(reasoning='thinking'),
        PromptChunk(content='answer', other_parts=[{'type': 'tool'}]),
    ]
    await registry.start_session('c1')
    await registry.process_message('c1', 'a1', 'hi', 'anthropic/claude-sonnet')

    assert [chunk for _, _, chunk, _ in store.chunks] == ['answer']
    completed = store.completed[0]
    assert completed['content'] == 'answer'
    assert completed['reasoning'] == 'thinking'
    assert completed['other_parts'] == [{'type': 'tool'}]


# ============================================================================
# Failure containment
# ============================================================================


@pytest.mark.asyncio
async def test_mid_stream_failure_completes_with_error(registry, store, runtime):
    runtime.fail_after = 1
    await registry.start_session('c1')
    await registry.process_message('c1', 'a1', 'hi', 'anthropic/claude-sonnet')

    assert store.calls['complete_message'] == 1
    content = store.completed[0]['content']
    assert content.startswith('Hello')
    assert 'Error: stream interrupted' in content
    assert store.chunks[-1][2] == 'Error: stream interrupted'
    assert store.chunks[-1][3] == 1


@pytest.mark.asyncio
async def test_unknown_session_writes_error(registry, store, runtime):
    await registry.process_message('ghost', 'a1', 'hi', None)

    assert runtime.calls['create_session'] == 0
    assert store.calls['complete_message'] == 1
    assert store.completed[0]['content'] == 'Error: Session ghost not found'


@pytest.mark.asyncio
async def test_create_session_failure_is_contained(registry, store, runtime):
    runtime.failures['create_session'] = RuntimeError('no capacity')
    await registry.start_session('c1')
    await registry.process_message('c1', 'a1', 'hi', 'anthropic/claude-sonnet')

    assert store.calls['session_ready'] == 0
    assert 'no capacity' in store.completed[0]['content']
    assert registry.get('c1').remote_session_id is None


@pytest.mark.asyncio
async def test_ready_guard_rejects_before_any_write(store, runtime, tmp_path):
    def guard():
        raise StateAssertionError('READY', 'CONNECTING')

    registry = SessionRegistry(
        store,
        runtime,
        worker_id=WorkerId('w1'),
        working_directory=str(tmp_path),
        ready_guard=guard,
    )
    with pytest.raises(StateAssertionError):
        await registry.process_message('c1', 'a1', 'hi', None)
    assert store.call_log == []


@pytest.mark.asyncio
async def test_start_session_times_out(store, runtime, tmp_path):
    store.get_active_sessions_delay = 0.5
    registry = SessionRegistry(
        store,
        runtime,
        worker_id=WorkerId('w1'),
        working_directory=str(tmp_path),
        session_init_timeout=0.01,
    )
    with pytest.raises(SessionInitTimeout):
        await registry.start_session('c1')
    assert registry.get('c1') is None


@pytest.mark.asyncio
async def test_failed_ready_report_is_retried_on_next_message(
    registry, store, runtime
):
    await registry.start_session('c1')
    store.failures['session_ready'] = CoordinationError('offline')
    await registry.process_message('c1', 'a1', 'hi', 'anthropic/claude-sonnet')

    assert registry.get('c1').remote_session_id == 'remote-1'
    assert registry.get('c1').ready_reported is False
    assert 'offline' in store.completed[0]['content']

    store.failures.clear()
    await registry.process_message('c1', 'a2', 'again', None)

    assert runtime.calls['create_session'] == 1
    assert store.calls['session_ready'] == 2
    assert registry.get('c1').ready_reported is True
    assert store.completed[-1]['content'] == 'Hello world'


@pytest.mark.asyncio
async def test_failed_completion_is_not_completed_again(registry, store):
    store.failures['complete_message'] = CoordinationError('write failed')
    await registry.start_session('c1')
    await registry.process_message('c1', 'a1', 'hi', 'anthropic/claude-sonnet')

    assert store.calls['complete_message'] == 1
    # No error chunk follows the streamed answer.
    assert store.calls['write_chunk'] == 2


# ============================================================================
# Per-session locks
# ============================================================================


@pytest.mark.asyncio
async def test_unknown_session_leaves_no_lock(registry):
    await registry.process_message('ghost', 'a1', 'hi', None)
    assert registry._locks == {}


@pytest.mark.asyncio
async def test_lock_is_dropped_with_its_session(registry):
    await registry.start_session('c1')
    await registry.process_message('c1', 'a1', 'hi', 'anthropic/claude-sonnet')
    await registry.end_session('c1')

    assert registry._locks == {}
    assert registry._lock_users == {}


@pytest.mark.asyncio
async def test_restarted_session_waits_for_in_flight_message(registry, store, runtime):
    runtime.prompt_gate = asyncio.Event()
    await registry.start_session('c1')
    first = asyncio.create_task(
        registry.process_message('c1', 'a1', 'one', 'anthropic/claude-sonnet')
    )
    while runtime.calls['send_prompt'] == 0:
        await asyncio.sleep(0)

    await registry.end_session('c1')
    await registry.start_session('c1')
    second = asyncio.create_task(
        registry.process_message('c1', 'a2', 'two', 'anthropic/claude-sonnet')
    )
    for _ in range(5):
        await asyncio.sleep(0)
    assert runtime.calls['send_prompt'] == 1

    runtime.prompt_gate.set()
    await asyncio.gather(first, second)

    assert [m for _, m, _, _ in store.chunks] == ['a1', 'a1', 'a2', 'a2']
    assert registry._lock_users == {}
    assert 'c1' in registry._locks


# ============================================================================
# Connection
# ============================================================================


@pytest.mark.asyncio
async def test_connect_publishes_models_then_marks_connected(registry, store, runtime):
    await registry.connect()

    assert store.names() == ['publish_models', 'mark_connected']
    assert [m.id for m in store.published_models[0]] == [
        'anthropic/claude-sonnet',
        'openai/gpt-4o',
    ]
    assert runtime.calls['create_client'] == 1


@pytest.mark.asyncio
async def test_models_are_cached(registry, runtime):
    await registry.get_models()
    await registry.get_models()
    assert runtime.calls['list_models'] == 1

    await registry.get_models(refresh=True)
    assert runtime.calls['list_models'] == 2


@pytest.mark.asyncio
async def test_end_session_keeps_remote_session(registry, runtime):
    await registry.start_session('c1')
    await registry.process_message('c1', 'a1', 'hi', 'anthropic/claude-sonnet')
    await registry.end_session('c1')

    assert registry.get('c1') is None
    assert runtime.calls['delete_session'] == 0
    assert 'remote-1' in runtime.sessions


@pytest.mark.asyncio
async def test_disconnect_all_closes_client(registry, runtime):
    await registry.start_session('c1')
    await registry.connect()
    await registry.disconnect_all()

    assert len(registry) == 0
    assert runtime.calls['close_client'] == 1

    # Closing twice is harmless.
    await registry.disconnect_all()
    assert runtime.calls['close_client'] == 1


def test_binding_is_never_replaced():
    session = Session(chat_session_id='c1', model='m', started_at=0.0)
    session.bind_remote('r1')
    session.bind_remote('r1')
    with pytest.raises(ValueError):
        session.bind_remote('r2')
    assert session.remote_session_id == 'r1'
