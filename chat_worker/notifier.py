"""
Event notifier: turns snapshot feeds into one-shot session/message events.

Subscriptions on the coordination store deliver the complete result set on
the first callback and again on every change. The notifier remembers what it
has already seen so each new session and each new user message is signalled
exactly once, even though every snapshot repeats everything.

Entities present in the first snapshot existed before this process attached
and are not signalled.
"""

import asyncio
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
    Type,
    TypeVar,
)

from pydantic import BaseModel, ValidationError

from .ports import (
    CoordinationStore,
    MessageSnapshot,
    SessionSnapshot,
    Subscription,
    WorkerSnapshot,
)

logger = logging.getLogger(__name__)

SessionStartCallback = Callable[[str], Awaitable[None]]
MessageCallback = Callable[[str, str, str, str], Awaitable[None]]
ConnectCallback = Callable[[], Awaitable[None]]

_T = TypeVar('_T', bound=BaseModel)


def _parse(model: Type[_T], items: Optional[Iterable[Any]]) -> List[_T]:
    parsed: List[_T] = []
    for item in items or []:
        if isinstance(item, model):
            parsed.append(item)
            continue
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning(f'Skipping malformed {model.__name__}: {e}')
    return parsed


def _message_key(message: MessageSnapshot) -> str:
    return f'{message.session_id}:{message.message_id}'


class EventNotifier:
    """
    Deduplicates subscription snapshots for one worker.

    Callbacks run as background tasks; a failing callback is logged and never
    reaches the subscription.
    """

    def __init__(
        self,
        on_session_start: SessionStartCallback,
        on_message: MessageCallback,
        on_connect: Optional[ConnectCallback] = None,
        resume_incomplete: bool = False,
    ):
        self._on_session_start = on_session_start
        self._on_message = on_message
        self._on_connect = on_connect
        self._resume_incomplete = resume_incomplete

        self.seen_sessions: Set[str] = set()
        self.processed_messages: Set[str] = set()
        self._claimed_targets: Set[str] = set()
        self._session_models: Dict[str, str] = {}
        self._sessions_initialized = False
        self._messages_initialized = False
        self._last_connect_request: Optional[float] = None

        self._subscriptions: List[Subscription] = []
        self._pending: Set[asyncio.Task] = set()
        self._closed = False

    # -------------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------------

    def attach(
        self, store: CoordinationStore, machine_id: str, worker_id: str
    ) -> None:
        """Subscribe to the session, message and worker feeds."""
        self._closed = False
        self._subscriptions.append(
            store.subscribe_to_sessions(worker_id, self.handle_sessions)
        )
        self._subscriptions.append(
            store.subscribe_to_messages(worker_id, self.handle_messages)
        )

        async def on_workers(snapshot: List[Any]) -> None:
            await self.handle_workers(snapshot, worker_id)

        self._subscriptions.append(
            store.subscribe_to_worker(machine_id, on_workers)
        )
        logger.info('Chat subscriptions active')

    def close(self) -> None:
        """Cancel subscriptions and stop dispatching new events."""
        self._closed = True
        for subscription in self._subscriptions:
            try:
                subscription.cancel()
            except Exception as e:
                logger.debug(f'Failed to cancel subscription: {e}')
        self._subscriptions.clear()

    @property
    def closed(self) -> bool:
        return self._closed

    async def wait_idle(self) -> None:
        """Wait for every dispatched callback to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _dispatch(self, label: str, coro_factory: Callable[[], Awaitable[None]]):
        if self._closed:
            logger.debug(f'Notifier closed, dropping {label}')
            return

        async def guarded() -> None:
            try:
                await coro_factory()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f'Error in {label} callback: {e}', exc_info=True)

        task = asyncio.create_task(guarded())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # -------------------------------------------------------------------------
    # Sessions feed
    # -------------------------------------------------------------------------

    async def handle_sessions(self, snapshot: Optional[List[Any]]) -> None:
        if snapshot is None:
            return
        sessions = _parse(SessionSnapshot, snapshot)
        for session in sessions:
            if session.model:
                self._session_models[session.session_id] = session.model

        if not self._sessions_initialized:
            for session in sessions:
                self.seen_sessions.add(session.session_id)
            self._sessions_initialized = True
            logger.info(
                f'Marked {len(self.seen_sessions)} existing sessions as seen'
            )
            return

        for session in sessions:
            if session.session_id in self.seen_sessions:
                continue
            if session.status != 'active':
                continue
            self.seen_sessions.add(session.session_id)
            logger.info(
                f'New session detected: {session.session_id} (model: {session.model})'
            )
            self._dispatch(
                f'session start {session.session_id}',
                lambda sid=session.session_id: self._on_session_start(sid),
            )

    # -------------------------------------------------------------------------
    # Messages feed
    # -------------------------------------------------------------------------

    async def handle_messages(self, snapshot: Optional[List[Any]]) -> None:
        if snapshot is None:
            return
        messages = sorted(
            _parse(MessageSnapshot, snapshot), key=lambda m: m.timestamp
        )

        if not self._messages_initialized:
            self._initialize_messages(messages)
            self._messages_initialized = True
            return

        for message in messages:
            key = _message_key(message)
            if key in self.processed_messages:
                continue
            if message.role != 'user' or not message.completed:
                continue
            self.processed_messages.add(key)
            logger.info(
                f'New user message detected: {message.message_id} '
                f'in session: {message.session_id}'
            )

            target = self._find_assistant_target(messages, message)
            if target is None:
                logger.error(
                    f'No assistant message found for user message: {message.message_id}'
                )
                continue
            self._signal_message(message, target)

    def _initialize_messages(self, messages: List[MessageSnapshot]) -> None:
        for message in messages:
            if message.completed:
                self.processed_messages.add(_message_key(message))
        logger.info(
            f'Marked {len(self.processed_messages)} existing messages as processed'
        )

        if not self._resume_incomplete:
            return

        for assistant in messages:
            if assistant.role != 'assistant' or assistant.completed:
                continue
            prompt = None
            for candidate in messages:
                if (
                    candidate.session_id == assistant.session_id
                    and candidate.role == 'user'
                    and candidate.completed
                    and candidate.timestamp < assistant.timestamp
                ):
                    prompt = candidate
            if prompt is None:
                continue
            logger.info(
                f'Resuming incomplete message: {assistant.message_id}'
            )
            self._signal_message(prompt, assistant)

    def _find_assistant_target(
        self, messages: List[MessageSnapshot], user_message: MessageSnapshot
    ) -> Optional[MessageSnapshot]:
        for candidate in messages:
            if (
                candidate.session_id == user_message.session_id
                and candidate.role == 'assistant'
                and not candidate.completed
                and candidate.timestamp > user_message.timestamp
                and _message_key(candidate) not in self._claimed_targets
            ):
                return candidate
        return None

    def _signal_message(
        self, prompt: MessageSnapshot, target: MessageSnapshot
    ) -> None:
        self._claimed_targets.add(_message_key(target))
        model = prompt.model or self._session_models.get(prompt.session_id, '')
        session_id = prompt.session_id
        target_id = target.message_id
        content = prompt.content
        logger.debug(f'Found assistant message: {target_id}')
        self._dispatch(
            f'message {target_id}',
            lambda: self._on_message(session_id, target_id, content, model),
        )

    # -------------------------------------------------------------------------
    # Worker feed
    # -------------------------------------------------------------------------

    async def handle_workers(
        self, snapshot: Optional[List[Any]], worker_id: str
    ) -> None:
        if not snapshot or self._on_connect is None:
            return
        worker = next(
            (w for w in _parse(WorkerSnapshot, snapshot) if w.worker_id == worker_id),
            None,
        )
        if worker is None or worker.connect_requested_at is None:
            return

        requested = worker.connect_requested_at
        if requested == self._last_connect_request:
            return
        if worker.connected_at is not None and requested <= worker.connected_at:
            return

        self._last_connect_request = requested
        logger.info(f'Connect request detected at: {requested}')
        self._dispatch('connect', self._on_connect)
