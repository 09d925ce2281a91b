"""In-memory fakes of the coordination store and the agent runtime."""

import asyncio
import time
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

import pytest

from chat_worker.config import WorkerConfig
from chat_worker.errors import AgentRuntimeError
from chat_worker.ids import MachineId, MachineSecret, WorkerId
from chat_worker.ports import (
    ActiveSessionRecord,
    ModelInfo,
    PromptChunk,
    RegistrationResult,
    RemoteSessionInfo,
)


class FakeSubscription:
    def __init__(self, name: str, callback):
        self.name = name
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeCoordinationStore:
    """Records every call in order; state lives in plain dicts."""

    def __init__(self):
        self.call_log: List[Tuple[str, tuple]] = []
        self.calls: Counter = Counter()
        # Results for successive register calls; exceptions are raised
        self.registrations: List[Any] = []
        self.failures: Dict[str, BaseException] = {}
        self.records: Dict[str, ActiveSessionRecord] = {}
        self.cursor: Optional[float] = None
        self.chunks: List[Tuple[str, str, str, int]] = []
        self.completed: List[Dict[str, Any]] = []
        self.published_models: List[List[ModelInfo]] = []
        self.subscriptions: List[FakeSubscription] = []
        self.get_active_sessions_delay = 0.0

    def _record(self, name: str, *args: Any) -> None:
        self.call_log.append((name, args))
        self.calls[name] += 1
        failure = self.failures.get(name)
        if failure is not None:
            raise failure

    def names(self) -> List[str]:
        return [name for name, _ in self.call_log]

    @property
    def write_count(self) -> int:
        return sum(
            self.calls[name]
            for name in (
                'update_session_name',
                'mark_session_deleted',
                'create_synced_session',
                'update_last_sync_timestamp',
            )
        )

    def subscription(self, name: str) -> FakeSubscription:
        return next(
            s for s in reversed(self.subscriptions) if s.name == name
        )

    async def push(self, name: str, snapshot: List[Dict[str, Any]]) -> None:
        await self.subscription(name).callback(snapshot)

    # Worker record

    async def register(self, machine_id, worker_id, secret):
        self._record('register', machine_id, worker_id)
        if self.registrations:
            result = self.registrations.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        return RegistrationResult(approved=True, status='online')

    async def heartbeat(self):
        self._record('heartbeat')

    async def set_offline(self):
        self._record('set_offline')

    async def mark_connected(self):
        self._record('mark_connected')

    async def publish_models(self, models):
        self._record('publish_models', len(models))
        self.published_models.append(list(models))

    # Subscriptions

    def _subscribe(self, name, callback):
        self._record(name)
        subscription = FakeSubscription(name, callback)
        self.subscriptions.append(subscription)
        return subscription

    def subscribe_to_sessions(self, worker_id, on_update):
        return self._subscribe('sessions', on_update)

    def subscribe_to_messages(self, worker_id, on_update):
        return self._subscribe('messages', on_update)

    def subscribe_to_worker(self, machine_id, on_update):
        return self._subscribe('worker', on_update)

    # Messages

    async def write_chunk(self, chat_session_id, message_id, chunk, sequence):
        self._record('write_chunk', chat_session_id, message_id, sequence)
        self.chunks.append((chat_session_id, message_id, chunk, sequence))

    async def complete_message(
        self,
        chat_session_id,
        message_id,
        content,
        reasoning=None,
        other_parts=None,
    ):
        self._record('complete_message', chat_session_id, message_id)
        self.completed.append(
            {
                'chat_session_id': chat_session_id,
                'message_id': message_id,
                'content': content,
                'reasoning': reasoning,
                'other_parts': other_parts,
            }
        )

    async def session_ready(self, chat_session_id, remote_session_id=None):
        self._record('session_ready', chat_session_id, remote_session_id)
        record = self.records.get(chat_session_id)
        if record is not None:
            record.remote_session_id = remote_session_id

    # Sessions

    def add_record(self, chat_session_id: str, **fields: Any) -> ActiveSessionRecord:
        record = ActiveSessionRecord(chat_session_id=chat_session_id, **fields)
        self.records[chat_session_id] = record
        return record

    async def get_active_sessions(self, worker_id):
        self._record('get_active_sessions', worker_id)
        if self.get_active_sessions_delay:
            await asyncio.sleep(self.get_active_sessions_delay)
        return [r.model_copy() for r in self.records.values()]

    async def update_session_name(self, chat_session_id, name):
        self._record('update_session_name', chat_session_id, name)
        record = self.records[chat_session_id]
        changed = record.name != name
        record.name = name
        record.last_synced_name_at = time.time() * 1000
        return changed

    async def mark_session_deleted(self, chat_session_id):
        self._record('mark_session_deleted', chat_session_id)
        self.records[chat_session_id].deleted_in_opencode = True

    async def create_synced_session(self, remote_session_id, model, name=None):
        self._record('create_synced_session', remote_session_id, model)
        chat_session_id = f'synced-{remote_session_id}'
        self.add_record(
            chat_session_id,
            remote_session_id=remote_session_id,
            model=model,
            name=name,
            last_synced_name_at=time.time() * 1000,
        )
        return chat_session_id

    async def get_last_sync_timestamp(self):
        self._record('get_last_sync_timestamp')
        return self.cursor

    async def update_last_sync_timestamp(self, timestamp):
        self._record('update_last_sync_timestamp', timestamp)
        self.cursor = timestamp

    async def disconnect(self):
        self._record('disconnect')


class FakeAgentRuntime:
    """Agent runtime with scripted prompt output."""

    def __init__(self):
        self.call_log: List[Tuple[str, tuple]] = []
        self.calls: Counter = Counter()
        self.models = [
            ModelInfo(id='anthropic/claude-sonnet', name='Claude Sonnet', provider='anthropic'),
            ModelInfo(id='openai/gpt-4o', name='GPT-4o', provider='openai'),
        ]
        self.sessions: Dict[str, RemoteSessionInfo] = {}
        self.prompt_output: List[PromptChunk] = [
            PromptChunk(content='Hello'),
            PromptChunk(content=' world'),
        ]
        self.fail_after: Optional[int] = None
        self.failures: Dict[str, BaseException] = {}
        # When set, prompts block until the event fires
        self.prompt_gate: Optional[asyncio.Event] = None
        self._next_id = 0

    def _record(self, name: str, *args: Any) -> None:
        self.call_log.append((name, args))
        self.calls[name] += 1
        failure = self.failures.get(name)
        if failure is not None:
            raise failure

    def add_session(self, session_id: str, title: Optional[str] = None):
        self.sessions[session_id] = RemoteSessionInfo(id=session_id, title=title)

    async def create_client(self, directory):
        self._record('create_client', directory)
        return {'directory': directory}

    async def list_models(self, instance):
        self._record('list_models')
        return list(self.models)

    async def create_session(self, instance, model):
        self._record('create_session', model)
        self._next_id += 1
        session_id = f'remote-{self._next_id}'
        self.add_session(session_id)
        return self.sessions[session_id]

    async def list_sessions(self, instance):
        self._record('list_sessions')
        return list(self.sessions.values())

    async def get_session(self, instance, session_id):
        self._record('get_session', session_id)
        return self.sessions[session_id]

    async def send_prompt(self, instance, session_id, content, model=None):
        self._record('send_prompt', session_id, content, model)
        if self.prompt_gate is not None:
            await self.prompt_gate.wait()
        for index, chunk in enumerate(self.prompt_output):
            if self.fail_after is not None and index >= self.fail_after:
                raise AgentRuntimeError('stream interrupted')
            yield chunk
        if self.fail_after is not None and self.fail_after >= len(self.prompt_output):
            raise AgentRuntimeError('stream interrupted')

    async def delete_session(self, instance, session_id):
        self._record('delete_session', session_id)
        self.sessions.pop(session_id, None)

    async def close_client(self, instance):
        self._record('close_client')


@pytest.fixture
def store():
    return FakeCoordinationStore()


@pytest.fixture
def runtime():
    return FakeAgentRuntime()


@pytest.fixture
def worker_config(tmp_path):
    return WorkerConfig(
        machine_id=MachineId('m1'),
        worker_id=WorkerId('w1'),
        secret=MachineSecret('s3cret'),
        coordination_url='https://example.convex.cloud',
        working_directory=str(tmp_path),
        approval_poll_interval=0.01,
        heartbeat_interval=60.0,
        sync_interval=60.0,
        recovery_delay=0.0,
        sync_batch_delay=0.0,
    )
