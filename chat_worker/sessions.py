"""
Session registry: the worker's view of active chat sessions.

Remote agent-runtime sessions are created lazily, on the first message of a
chat session, because the model to use is only known at that point. A chat
session that already has a remote session bound in the coordination store is
restored without creating a new one, so agent context survives restarts.

Messages for one chat session are processed one at a time; concurrent
messages for the same session wait for the previous one to finish.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

from .errors import (
    AgentRuntimeError,
    SessionInitTimeout,
    SessionNotFoundError,
    describe_error,
)
from .ids import ChatSessionId, MessageId, RemoteSessionId, WorkerId
from .ports import AgentRuntime, CoordinationStore, ModelInfo
from .sync import ModelCache

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """In-memory registry entry for one chat session."""

    chat_session_id: ChatSessionId
    model: str
    started_at: float
    remote_session_id: Optional[RemoteSessionId] = None
    is_initializing: bool = True
    # False while the coordination store has not acknowledged the binding
    ready_reported: bool = True

    def bind_remote(self, remote_session_id: RemoteSessionId) -> None:
        """Bind the agent-runtime session. A binding is never replaced."""
        if (
            self.remote_session_id is not None
            and self.remote_session_id != remote_session_id
        ):
            raise ValueError(
                f'Session {self.chat_session_id} is already bound to '
                f'{self.remote_session_id}'
            )
        self.remote_session_id = remote_session_id
        self.is_initializing = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'chat_session_id': str(self.chat_session_id),
            'remote_session_id': (
                str(self.remote_session_id) if self.remote_session_id else None
            ),
            'model': self.model,
            'started_at': self.started_at,
            'is_initializing': self.is_initializing,
            'ready_reported': self.ready_reported,
        }


class SessionRegistry:
    """
    Owns the active sessions and routes messages to the agent runtime.

    Responsibilities:
    - Lazy agent-runtime client and remote session creation
    - Streaming agent output back to the coordination store
    - Containing per-session and per-message failures
    """

    def __init__(
        self,
        store: CoordinationStore,
        runtime: AgentRuntime,
        worker_id: WorkerId,
        working_directory: str,
        ready_guard: Optional[Callable[[], None]] = None,
        session_init_timeout: float = 30.0,
        model_cache_ttl: float = 300.0,
    ):
        self.store = store
        self.runtime = runtime
        self.worker_id = worker_id
        self.working_directory = working_directory
        self._ready_guard = ready_guard
        self._session_init_timeout = session_init_timeout
        self._sessions: Dict[ChatSessionId, Session] = {}
        self._locks: Dict[ChatSessionId, asyncio.Lock] = {}
        self._lock_users: Dict[ChatSessionId, int] = {}
        self._client: Any = None
        self._client_lock = asyncio.Lock()
        self.model_cache = ModelCache(ttl=model_cache_ttl)

    # -------------------------------------------------------------------------
    # Agent runtime client
    # -------------------------------------------------------------------------

    async def ensure_client(self) -> Any:
        """Create the agent-runtime client on first use."""
        async with self._client_lock:
            if self._client is None:
                logger.info(
                    f'Initializing agent runtime for directory: {self.working_directory}'
                )
                self._client = await self.runtime.create_client(
                    self.working_directory
                )
                logger.info('Agent runtime initialized')
            return self._client

    async def get_models(self, refresh: bool = False) -> List[ModelInfo]:
        """Model list, served from cache unless stale or ``refresh`` is set."""
        if not refresh:
            cached = self.model_cache.get()
            if cached is not None:
                return cached
        client = await self.ensure_client()
        models = await self.runtime.list_models(client)
        self.model_cache.put(models)
        return models

    async def connect(self) -> None:
        """Start the agent runtime, publish its models, report connected."""
        await self.ensure_client()
        models = await self.get_models(refresh=True)
        await self.store.publish_models(models)
        logger.info(f'Published {len(models)} models')
        await self.store.mark_connected()

    async def disconnect_all(self) -> None:
        """Drop every session and close the agent-runtime client."""
        count = len(self._sessions)
        self._sessions.clear()
        for key in list(self._locks):
            self._release_lock(key)
        async with self._client_lock:
            client, self._client = self._client, None
        if client is not None:
            try:
                await self.runtime.close_client(client)
            except Exception as e:
                logger.warning(f'Failed to close agent runtime client: {e}')
        logger.info(f'Disconnected {count} sessions')

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    def get(self, chat_session_id: str) -> Optional[Session]:
        return self._sessions.get(ChatSessionId(chat_session_id))

    def active_sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    async def start_session(self, chat_session_id: str) -> Session:
        """Register a chat session, restoring an existing remote binding."""
        key = ChatSessionId(chat_session_id)
        existing = self._sessions.get(key)
        if existing is not None:
            logger.debug(f'Session {key} already registered')
            return existing

        try:
            records = await asyncio.wait_for(
                self.store.get_active_sessions(self.worker_id),
                timeout=self._session_init_timeout,
            )
        except asyncio.TimeoutError:
            raise SessionInitTimeout(
                f'Timed out looking up session {key} after '
                f'{self._session_init_timeout}s'
            )

        record = next(
            (r for r in records if r.chat_session_id == key), None
        )

        # Another start for the same id may have finished while we waited.
        existing = self._sessions.get(key)
        if existing is not None:
            return existing

        if record is not None and record.remote_session_id:
            session = Session(
                chat_session_id=key,
                model=record.model or '',
                started_at=time.time(),
            )
            session.bind_remote(RemoteSessionId(record.remote_session_id))
            logger.info(
                f'Restored session {key} -> remote {session.remote_session_id}'
            )
        else:
            session = Session(
                chat_session_id=key, model='', started_at=time.time()
            )
            logger.info(
                f'Session {key} registered, remote session created on first message'
            )

        self._sessions[key] = session
        return session

    async def end_session(self, chat_session_id: str) -> None:
        """Forget a session. The remote agent-runtime session is kept."""
        key = ChatSessionId(chat_session_id)
        if self._sessions.pop(key, None) is not None:
            logger.info(f'Ended session {key}')
        self._release_lock(key)

    def forget(self, chat_session_id: str) -> bool:
        """Drop a session detected as deleted upstream."""
        key = ChatSessionId(chat_session_id)
        removed = self._sessions.pop(key, None) is not None
        self._release_lock(key)
        return removed

    def unreported_remote_ids(self) -> Set[str]:
        """Remote sessions bound here but not yet acknowledged by the store."""
        return {
            str(s.remote_session_id)
            for s in self._sessions.values()
            if s.remote_session_id is not None and not s.ready_reported
        }

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def _release_lock(self, key: ChatSessionId) -> None:
        # A lock in use stays until its last user leaves.
        if not self._lock_users.get(key):
            self._locks.pop(key, None)

    @asynccontextmanager
    async def _session_lock(self, key: ChatSessionId) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[key] - 1
            if remaining:
                self._lock_users[key] = remaining
            else:
                del self._lock_users[key]
                if key not in self._sessions:
                    self._locks.pop(key, None)

    async def process_message(
        self,
        chat_session_id: str,
        message_id: str,
        content: str,
        model: Optional[str] = None,
    ) -> None:
        """Run one prompt and stream the answer into ``message_id``.

        Failures are written to the message as an error and never raised,
        except for the ready guard, which rejects the call up front.
        """
        if self._ready_guard is not None:
            self._ready_guard()

        key = ChatSessionId(chat_session_id)
        target = MessageId(message_id)

        if key not in self._sessions:
            await self._session_not_found(key, target)
            return

        async with self._session_lock(key):
            # The session may have ended while this message waited.
            session = self._sessions.get(key)
            if session is None:
                await self._session_not_found(key, target)
                return
            await self._run_prompt(session, target, content, model)

    async def _session_not_found(
        self, key: ChatSessionId, message_id: MessageId
    ) -> None:
        logger.error(f'Session {key} not found')
        await self._fail_message(
            key, message_id, SessionNotFoundError(key), '', 0
        )

    async def _report_ready(self, session: Session) -> None:
        await self.store.session_ready(
            session.chat_session_id, session.remote_session_id
        )
        session.ready_reported = True

    async def _ensure_remote_session(
        self, session: Session, model: str
    ) -> RemoteSessionId:
        if session.remote_session_id is not None:
            if not session.ready_reported:
                logger.info(
                    f'Retrying ready report for {session.chat_session_id}'
                )
                await self._report_ready(session)
            return session.remote_session_id

        client = await self.ensure_client()
        try:
            info = await self.runtime.create_session(client, model)
        except AgentRuntimeError:
            raise
        except Exception as e:
            raise AgentRuntimeError(
                f'Failed to create remote session: {e}'
            ) from e

        session.model = model
        session.bind_remote(RemoteSessionId(info.id))
        session.ready_reported = False
        logger.info(
            f'Created remote session {info.id} for {session.chat_session_id} (model: {model})'
        )
        await self._report_ready(session)
        return session.remote_session_id

    async def _run_prompt(
        self,
        session: Session,
        message_id: MessageId,
        content: str,
        model: Optional[str],
    ) -> None:
        key = session.chat_session_id
        requested = model or session.model
        full_content = ''
        reasoning = ''
        other_parts: List[Any] = []
        sequence = 0
        completing = False

        try:
            remote_id = await self._ensure_remote_session(session, requested)

            if model and model != session.model:
                logger.info(
                    f'Session {key} model override: {session.model!r} -> {model!r}'
                )
                session.model = model

            client = await self.ensure_client()
            stream = self.runtime.send_prompt(
                client, remote_id, content, session.model or None
            )
            async for unit in stream:
                if unit.reasoning:
                    reasoning += unit.reasoning
                    logger.debug(
                        f'Reasoning for {message_id}: {unit.reasoning[:200]}'
                    )
                if unit.other_parts:
                    other_parts.extend(unit.other_parts)
                if unit.content:
                    full_content += unit.content
                    await self.store.write_chunk(
                        key, message_id, unit.content, sequence
                    )
                    sequence += 1
                    logger.debug(
                        f'Chunk {sequence} sent ({len(unit.content)} chars)'
                    )

            completing = True
            await self.store.complete_message(
                key,
                message_id,
                full_content,
                reasoning=reasoning or None,
                other_parts=other_parts or None,
            )
            logger.info(
                f'Message {message_id} completed ({len(full_content)} chars total)'
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if completing:
                logger.error(f'Failed to complete message {message_id}: {e}')
                return
            logger.error(
                f'Failed to process message {message_id}: {e}', exc_info=True
            )
            await self._fail_message(key, message_id, e, full_content, sequence)

    async def _fail_message(
        self,
        chat_session_id: ChatSessionId,
        message_id: MessageId,
        error: BaseException,
        partial: str,
        sequence: int,
    ) -> None:
        """Write one error chunk and complete the message with it."""
        error_text = describe_error(error)
        final = f'{partial}\n\n{error_text}' if partial else error_text
        try:
            await self.store.write_chunk(
                chat_session_id, message_id, error_text, sequence
            )
        except Exception as e:
            logger.warning(f'Failed to write error chunk for {message_id}: {e}')
        try:
            await self.store.complete_message(
                chat_session_id, message_id, final
            )
        except Exception as e:
            logger.error(
                f'Failed to complete message {message_id} after error: {e}'
            )
