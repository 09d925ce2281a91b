"""
Coordination store backed by a Convex deployment.

Functions are called through Convex's HTTP function API:

    POST {url}/api/query      {"path": "chat:getActiveSessions", "args": {...}, "format": "json"}
    POST {url}/api/mutation   {"path": "workers:register", "args": {...}, "format": "json"}

and answer ``{"status": "success", "value": ...}`` or
``{"status": "error", "errorMessage": ...}``.

Subscriptions poll their query and hand the full result to the callback
whenever it changes; the first result is always delivered.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Set

import aiohttp

from .config import WorkerConfig
from .errors import AuthorizationError, CoordinationError, NetworkError
from .ports import (
    ActiveSessionRecord,
    ModelInfo,
    RegistrationResult,
    SnapshotCallback,
)

logger = logging.getLogger(__name__)

_UNSET = object()


class PollingSubscription:
    """Polls one query and reports changed results to ``on_update``."""

    def __init__(
        self,
        store: 'ConvexCoordinationStore',
        path: str,
        args: Dict[str, Any],
        on_update: SnapshotCallback,
        interval: float,
    ):
        self.path = path
        self.args = args
        self._store = store
        self._on_update = on_update
        self._interval = interval
        self._last: Any = _UNSET
        self._failing = False
        self._task: Optional[asyncio.Task] = asyncio.create_task(
            self._loop(), name=f'subscription {path}'
        )

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _loop(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self._interval)

    async def poll_once(self) -> bool:
        """Run the query once. True if ``on_update`` was called."""
        try:
            value = await self._store.query(self.path, self.args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._failing:
                logger.warning(f'Subscription {self.path} failed: {e}')
            self._failing = True
            return False
        if self._failing:
            logger.info(f'Subscription {self.path} recovered')
            self._failing = False

        fingerprint = json.dumps(value, sort_keys=True, default=str)
        if fingerprint == self._last:
            return False
        self._last = fingerprint

        try:
            await self._on_update(value)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f'Error in {self.path} subscription callback: {e}', exc_info=True
            )
        return True


class ConvexCoordinationStore:
    """
    :class:`~chat_worker.ports.CoordinationStore` over the Convex HTTP API.

    Responsibilities:
    - aiohttp session lifecycle
    - Mapping transport failures onto the worker error taxonomy
    - Polling subscriptions for the session, message and worker feeds
    """

    def __init__(
        self,
        config: WorkerConfig,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config
        self.url = config.coordination_url.rstrip('/')
        self.session = session
        self._subscriptions: Set[PollingSubscription] = set()

    async def get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=30),
                headers={'Content-Type': 'application/json'},
            )
        return self.session

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _call(self, kind: str, path: str, args: Dict[str, Any]) -> Any:
        session = await self.get_session()
        payload = {'path': path, 'args': args, 'format': 'json'}
        try:
            async with session.post(
                f'{self.url}/api/{kind}', json=payload
            ) as resp:
                if resp.status in (401, 403):
                    raise AuthorizationError(
                        f'{path}: unauthorized ({resp.status})'
                    )
                try:
                    data = await resp.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError):
                    text = await resp.text()
                    raise CoordinationError(
                        f'{path} failed ({resp.status}): {text[:200]}'
                    )
        except aiohttp.ClientConnectionError as e:
            raise NetworkError(f'Connection to {self.url} failed: {e}') from e
        except asyncio.TimeoutError as e:
            raise NetworkError(f'{path}: request timed out') from e

        if not isinstance(data, dict):
            raise CoordinationError(f'{path}: unexpected response {data!r}')
        if data.get('status') != 'success':
            message = data.get('errorMessage') or f'HTTP {resp.status}'
            raise CoordinationError(f'{path}: {message}')
        return data.get('value')

    async def query(self, path: str, args: Dict[str, Any]) -> Any:
        return await self._call('query', path, args)

    async def mutation(self, path: str, args: Dict[str, Any]) -> Any:
        return await self._call('mutation', path, args)

    @property
    def _worker_args(self) -> Dict[str, str]:
        return {
            'machineId': str(self.config.machine_id),
            'workerId': str(self.config.worker_id),
        }

    # -------------------------------------------------------------------------
    # Worker record
    # -------------------------------------------------------------------------

    async def register(
        self, machine_id: str, worker_id: str, secret: str
    ) -> RegistrationResult:
        # The secret stays local; workers are matched by machine and worker id.
        value = await self.mutation(
            'workers:register',
            {'machineId': str(machine_id), 'workerId': str(worker_id)},
        )
        result = RegistrationResult.model_validate(value or {})
        logger.info(
            f'Registered worker {worker_id} '
            f'(approved: {result.approved}, status: {result.status})'
        )
        return result

    async def heartbeat(self) -> None:
        await self.mutation('workers:heartbeat', self._worker_args)
        logger.debug('Heartbeat sent')

    async def set_offline(self) -> None:
        await self.mutation('workers:setOffline', self._worker_args)

    async def mark_connected(self) -> None:
        await self.mutation('workers:markConnected', self._worker_args)

    async def publish_models(self, models: List[ModelInfo]) -> None:
        await self.mutation(
            'workerModels:updateModels',
            {
                'workerId': str(self.config.worker_id),
                'models': [m.model_dump() for m in models],
            },
        )

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def _subscribe(
        self, path: str, args: Dict[str, Any], on_update: SnapshotCallback
    ) -> PollingSubscription:
        subscription = PollingSubscription(
            self,
            path,
            args,
            on_update,
            interval=self.config.subscription_poll_interval,
        )
        self._subscriptions.add(subscription)
        return subscription

    def subscribe_to_sessions(
        self, worker_id: str, on_update: SnapshotCallback
    ) -> PollingSubscription:
        return self._subscribe(
            'chat:subscribeToWorkerSessions',
            {'workerId': str(worker_id)},
            on_update,
        )

    def subscribe_to_messages(
        self, worker_id: str, on_update: SnapshotCallback
    ) -> PollingSubscription:
        return self._subscribe(
            'chat:subscribeToWorkerMessages',
            {'workerId': str(worker_id)},
            on_update,
        )

    def subscribe_to_worker(
        self, machine_id: str, on_update: SnapshotCallback
    ) -> PollingSubscription:
        return self._subscribe(
            'workers:list', {'machineId': str(machine_id)}, on_update
        )

    # -------------------------------------------------------------------------
    # Messages and sessions
    # -------------------------------------------------------------------------

    async def write_chunk(
        self,
        chat_session_id: str,
        message_id: str,
        chunk: str,
        sequence: int,
    ) -> None:
        await self.mutation(
            'chat:writeChunk',
            {
                'chatSessionId': str(chat_session_id),
                'messageId': str(message_id),
                'chunk': chunk,
                'sequence': sequence,
            },
        )

    async def complete_message(
        self,
        chat_session_id: str,
        message_id: str,
        content: str,
        reasoning: Optional[str] = None,
        other_parts: Optional[List[Any]] = None,
    ) -> None:
        args: Dict[str, Any] = {
            'chatSessionId': str(chat_session_id),
            'messageId': str(message_id),
            'content': content,
        }
        if reasoning:
            args['reasoning'] = reasoning
        if other_parts:
            args['otherParts'] = other_parts
        await self.mutation('chat:completeMessage', args)

    async def session_ready(
        self, chat_session_id: str, remote_session_id: Optional[str] = None
    ) -> None:
        args: Dict[str, Any] = {'chatSessionId': str(chat_session_id)}
        if remote_session_id:
            args['opencodeSessionId'] = str(remote_session_id)
        await self.mutation('chat:sessionReady', args)

    async def get_active_sessions(
        self, worker_id: str
    ) -> List[ActiveSessionRecord]:
        value = await self.query(
            'chat:getActiveSessions', {'workerId': str(worker_id)}
        )
        return [ActiveSessionRecord.model_validate(s) for s in value or []]

    async def update_session_name(
        self, chat_session_id: str, name: str
    ) -> bool:
        value = await self.mutation(
            'chat:updateSessionName',
            {'chatSessionId': str(chat_session_id), 'name': name},
        )
        if isinstance(value, dict):
            return bool(value.get('changed', True))
        return bool(value) if value is not None else True

    async def mark_session_deleted(self, chat_session_id: str) -> None:
        await self.mutation(
            'chat:markSessionDeleted', {'chatSessionId': str(chat_session_id)}
        )

    async def create_synced_session(
        self,
        remote_session_id: str,
        model: str,
        name: Optional[str] = None,
    ) -> str:
        args: Dict[str, Any] = {
            **self._worker_args,
            'opencodeSessionId': str(remote_session_id),
            'model': model,
        }
        if name:
            args['name'] = name
        value = await self.mutation('chat:createSyncedSession', args)
        if not value:
            raise CoordinationError(
                f'createSyncedSession returned no id for {remote_session_id}'
            )
        return str(value)

    async def get_last_sync_timestamp(self) -> Optional[float]:
        value = await self.query(
            'workers:getLastSyncTimestamp', self._worker_args
        )
        return float(value) if value is not None else None

    async def update_last_sync_timestamp(self, timestamp: float) -> None:
        await self.mutation(
            'workers:updateLastSyncTimestamp',
            {**self._worker_args, 'timestamp': timestamp},
        )

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def disconnect(self) -> None:
        """Cancel subscriptions, report offline (best effort), close HTTP."""
        for subscription in list(self._subscriptions):
            subscription.cancel()
        self._subscriptions.clear()

        try:
            await self.set_offline()
        except Exception as e:
            logger.error(f'Failed to set offline status: {e}')

        await self.close()
        logger.info('Disconnected from coordination store')
