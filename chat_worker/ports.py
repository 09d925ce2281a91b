"""
Ports to the two external systems the worker coordinates.

- ``CoordinationStore``: the realtime backend holding workers, sessions and
  messages (source of truth for the chat UI).
- ``AgentRuntime``: the process that actually runs model sessions.

Records exchanged through the ports are pydantic models. Field aliases match
the camelCase payloads of the coordination store so raw query results can be
validated directly.
"""

from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    List,
    Optional,
    Protocol,
)

from pydantic import BaseModel, ConfigDict, Field


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')


class RegistrationResult(_Record):
    approved: bool
    status: str = 'offline'
    approval_status: Optional[str] = Field(None, alias='approvalStatus')
    worker_id: Optional[str] = Field(None, alias='workerId')
    name: Optional[str] = None


class ModelInfo(_Record):
    id: str
    name: str
    provider: str


class ActiveSessionRecord(_Record):
    """Durable session record as stored by the coordination store."""

    chat_session_id: str = Field(..., alias='chatSessionId')
    remote_session_id: Optional[str] = Field(None, alias='opencodeSessionId')
    model: Optional[str] = None
    created_at: Optional[float] = Field(None, alias='createdAt')
    name: Optional[str] = None
    last_synced_name_at: Optional[float] = Field(
        None, alias='lastSyncedNameAt'
    )
    deleted_in_opencode: bool = Field(False, alias='deletedInOpencode')


class SessionSnapshot(_Record):
    """One session entry of the sessions subscription feed."""

    session_id: str = Field(..., alias='sessionId')
    worker_id: Optional[str] = Field(None, alias='workerId')
    model: Optional[str] = None
    status: str = 'active'
    created_at: Optional[float] = Field(None, alias='createdAt')
    last_activity: Optional[float] = Field(None, alias='lastActivity')


class MessageSnapshot(_Record):
    """One message entry of the messages subscription feed."""

    message_id: str = Field(..., alias='messageId')
    session_id: str = Field(..., alias='sessionId')
    role: str
    content: str = ''
    timestamp: float = 0
    completed: bool = False
    model: Optional[str] = None


class WorkerSnapshot(_Record):
    """This worker's own record, used to detect connect requests."""

    worker_id: str = Field(..., alias='workerId')
    status: Optional[str] = None
    connect_requested_at: Optional[float] = Field(
        None, alias='connectRequestedAt'
    )
    connected_at: Optional[float] = Field(None, alias='connectedAt')


class RemoteSessionInfo(_Record):
    """Session as reported by the agent runtime."""

    id: str
    title: Optional[str] = None
    directory: Optional[str] = None
    parent_id: Optional[str] = Field(None, alias='parentID')


class PromptChunk(_Record):
    """One unit of streamed agent output."""

    content: Optional[str] = None
    reasoning: Optional[str] = None
    other_parts: List[Any] = Field(default_factory=list, alias='otherParts')


SnapshotCallback = Callable[[List[Any]], Awaitable[None]]


class Subscription(Protocol):
    def cancel(self) -> None: ...


class CoordinationStore(Protocol):
    """Operations the worker needs from the coordination store."""

    async def register(
        self, machine_id: str, worker_id: str, secret: str
    ) -> RegistrationResult: ...

    async def heartbeat(self) -> None: ...

    async def set_offline(self) -> None: ...

    async def mark_connected(self) -> None: ...

    async def publish_models(self, models: List[ModelInfo]) -> None: ...

    def subscribe_to_sessions(
        self, worker_id: str, on_update: SnapshotCallback
    ) -> Subscription: ...

    def subscribe_to_messages(
        self, worker_id: str, on_update: SnapshotCallback
    ) -> Subscription: ...

    def subscribe_to_worker(
        self, machine_id: str, on_update: SnapshotCallback
    ) -> Subscription: ...

    async def write_chunk(
        self,
        chat_session_id: str,
        message_id: str,
        chunk: str,
        sequence: int,
    ) -> None: ...

    async def complete_message(
        self,
        chat_session_id: str,
        message_id: str,
        content: str,
        reasoning: Optional[str] = None,
        other_parts: Optional[List[Any]] = None,
    ) -> None: ...

    async def session_ready(
        self, chat_session_id: str, remote_session_id: Optional[str] = None
    ) -> None: ...

    async def get_active_sessions(
        self, worker_id: str
    ) -> List[ActiveSessionRecord]: ...

    async def update_session_name(
        self, chat_session_id: str, name: str
    ) -> bool: ...

    async def mark_session_deleted(self, chat_session_id: str) -> None: ...

    async def create_synced_session(
        self,
        remote_session_id: str,
        model: str,
        name: Optional[str] = None,
    ) -> str: ...

    async def get_last_sync_timestamp(self) -> Optional[float]: ...

    async def update_last_sync_timestamp(self, timestamp: float) -> None: ...

    async def disconnect(self) -> None: ...


class AgentRuntime(Protocol):
    """Operations the worker needs from the agent runtime.

    ``instance`` is an opaque handle returned by :meth:`create_client`.
    """

    async def create_client(self, directory: str) -> Any: ...

    async def list_models(self, instance: Any) -> List[ModelInfo]: ...

    async def create_session(
        self, instance: Any, model: str
    ) -> RemoteSessionInfo: ...

    async def list_sessions(self, instance: Any) -> List[RemoteSessionInfo]: ...

    async def get_session(
        self, instance: Any, session_id: str
    ) -> RemoteSessionInfo: ...

    def send_prompt(
        self,
        instance: Any,
        session_id: str,
        content: str,
        model: Optional[str] = None,
    ) -> AsyncIterator[PromptChunk]: ...

    async def delete_session(self, instance: Any, session_id: str) -> None: ...

    async def close_client(self, instance: Any) -> None: ...
