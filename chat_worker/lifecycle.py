"""
Worker lifecycle controller.

Drives the state machine through registration, approval, connection and
shutdown, and wires the event notifier into the session registry once the
worker is connected:

    UNINITIALIZED -> REGISTERING -> (WAITING_APPROVAL) -> CONNECTING -> READY

Failures in any phase are captured into the state machine, classified, and
either recovered (back to REGISTERING) or turned into a shutdown.

Everything one worker instance owns lives in a :class:`WorkerContext` that is
built once by :meth:`LifecycleController.start` and passed explicitly to the
collaborators; there is no module-level worker state.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import WorkerConfig
from .errors import (
    ErrorHandlingStrategy,
    WorkerError,
    classify,
)
from .notifier import EventNotifier
from .ports import AgentRuntime, CoordinationStore
from .sessions import SessionRegistry
from .state_machine import WorkerEvent, WorkerState, WorkerStateMachine
from .sync import SessionSynchronizer

logger = logging.getLogger(__name__)

StoreFactory = Callable[[WorkerConfig], CoordinationStore]
RuntimeFactory = Callable[[WorkerConfig], AgentRuntime]

STOPPABLE_STATES = (
    WorkerState.WAITING_APPROVAL,
    WorkerState.READY,
    WorkerState.ERROR,
)
STATUS_HISTORY_SIZE = 10


# =============================================================================
# Periodic tasks
# =============================================================================


class PeriodicTask:
    """
    Runs ``func`` every ``interval`` seconds in a background task.

    Exceptions raised by ``func`` are logged and the loop keeps going.
    :meth:`stop` cancels the task and waits for it to finish.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval: float,
        run_immediately: bool = False,
    ):
        self.name = name
        self.func = func
        self.interval = interval
        self.run_immediately = run_immediately
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            logger.warning(f'{self.name} already running')
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.debug(f'{self.name} started (interval={self.interval}s)')

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if task is asyncio.current_task():
            # Stopping from inside the loop; it exits when func returns.
            task.cancel()
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f'{self.name} stopped')

    async def _loop(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            try:
                await self.func()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f'{self.name} failed: {e}')
            self.runs += 1
            await asyncio.sleep(self.interval)


# =============================================================================
# Worker context
# =============================================================================


@dataclass
class WorkerContext:
    """Everything one running worker instance owns."""

    config: WorkerConfig
    store: CoordinationStore
    runtime: AgentRuntime
    registry: SessionRegistry
    synchronizer: SessionSynchronizer
    heartbeat: PeriodicTask
    sync_timer: PeriodicTask
    notifier: Optional[EventNotifier] = None
    approval_task: Optional[asyncio.Task] = None


def _default_store_factory(config: WorkerConfig) -> CoordinationStore:
    from .coordination import ConvexCoordinationStore

    return ConvexCoordinationStore(config)


def _default_runtime_factory(config: WorkerConfig) -> AgentRuntime:
    from .opencode_runtime import OpencodeRuntime

    return OpencodeRuntime(opencode_bin=config.opencode_bin)


# =============================================================================
# Lifecycle controller
# =============================================================================


class LifecycleController:
    """
    Orchestrates one worker's lifecycle.

    Public surface used by the process entry point: :meth:`start`,
    :meth:`stop`, :meth:`get_state`, :meth:`is_ready` and
    :meth:`get_status`.
    """

    def __init__(
        self,
        store_factory: Optional[StoreFactory] = None,
        runtime_factory: Optional[RuntimeFactory] = None,
    ):
        self._store_factory = store_factory or _default_store_factory
        self._runtime_factory = runtime_factory or _default_runtime_factory
        self.fsm = WorkerStateMachine()
        self.context: Optional[WorkerContext] = None
        self._recovery_attempts = 0
        self._stopped = asyncio.Event()

    # -------------------------------------------------------------------------
    # Public surface
    # -------------------------------------------------------------------------

    async def start(self, config: WorkerConfig) -> None:
        """Register and connect. Returns once READY or WAITING_APPROVAL.

        Raises the triggering error if the worker had to stop.
        """
        self.fsm.assert_state(WorkerState.UNINITIALIZED)
        self.fsm = WorkerStateMachine(max_history=config.history_size)
        self.context = self._build_context(config)
        logger.info(
            f'Starting worker {config.worker_key} in {config.working_directory}'
        )

        self.fsm.transition(WorkerEvent.START)
        try:
            error = await self._run_registration()
        except asyncio.CancelledError:
            # Interrupted mid-phase: release what was acquired so far.
            if self.fsm.can_transition(WorkerEvent.ERROR):
                self.fsm.set_error(WorkerError('Start cancelled'))
                self.fsm.transition(WorkerEvent.ERROR)
            await self.stop()
            raise
        if error is not None:
            raise error

    async def stop(self) -> None:
        """Shut down. Only accepted from WAITING_APPROVAL, READY or ERROR."""
        if not self.fsm.is_one_of(*STOPPABLE_STATES):
            logger.warning(f'Cannot stop from state {self.fsm.current_state}')
            return

        self.fsm.transition(WorkerEvent.STOP)
        logger.info('Stopping worker...')
        try:
            await self._shutdown()
        except Exception as e:
            logger.error(f'Error during stop: {e}', exc_info=True)
        finally:
            self.fsm.complete()
            self._stopped.set()
            logger.info('Worker stopped')

    def get_state(self) -> WorkerState:
        return self.fsm.current_state

    def is_ready(self) -> bool:
        return self.fsm.is_state(WorkerState.READY)

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def get_status(self) -> Dict[str, Any]:
        error = self.fsm.error
        history = self.fsm.get_history()[-STATUS_HISTORY_SIZE:]
        registry = self.context.registry if self.context else None
        return {
            'worker': self.context.config.worker_key if self.context else None,
            'state': self.fsm.current_state.value,
            'is_ready': self.is_ready(),
            'error': str(error) if error else None,
            'history': [t.to_dict() for t in history],
            'sessions': (
                [s.to_dict() for s in registry.active_sessions()]
                if registry is not None
                else []
            ),
        }

    # -------------------------------------------------------------------------
    # Context
    # -------------------------------------------------------------------------

    def _build_context(self, config: WorkerConfig) -> WorkerContext:
        store = self._store_factory(config)
        runtime = self._runtime_factory(config)
        registry = SessionRegistry(
            store,
            runtime,
            worker_id=config.worker_id,
            working_directory=config.working_directory,
            ready_guard=lambda: self.fsm.assert_state(WorkerState.READY),
            model_cache_ttl=config.model_cache_ttl,
        )
        synchronizer = SessionSynchronizer(
            registry,
            batch_size=config.sync_batch_size,
            batch_delay=config.sync_batch_delay,
        )
        return WorkerContext(
            config=config,
            store=store,
            runtime=runtime,
            registry=registry,
            synchronizer=synchronizer,
            heartbeat=PeriodicTask(
                'heartbeat', store.heartbeat, config.heartbeat_interval
            ),
            sync_timer=PeriodicTask(
                'session sync',
                synchronizer.run_pass,
                config.sync_interval,
                run_immediately=True,
            ),
        )

    def _require_context(self) -> WorkerContext:
        if self.context is None:
            raise WorkerError('Worker context not initialized')
        return self.context

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def _run_registration(self) -> Optional[BaseException]:
        """Run REGISTERING onwards, recovering until it succeeds or stops."""
        while True:
            try:
                await self._handle_registering()
                return None
            except Exception as e:
                strategy = self._handle_error(e)
                if strategy != ErrorHandlingStrategy.RECOVER:
                    await self.stop()
                    return e
                if not await self._recover():
                    await self.stop()
                    return e

    async def _handle_registering(self) -> None:
        context = self._require_context()
        config = context.config
        logger.info('Registering worker...')
        result = await context.store.register(
            config.machine_id, config.worker_id, config.secret
        )
        if result.name:
            logger.info(f'Worker name: {result.name}')

        if result.approved:
            logger.info('Worker already approved')
            self.fsm.transition(WorkerEvent.REGISTERED)
            await self._handle_connecting()
        else:
            self.fsm.transition(WorkerEvent.WAIT_APPROVAL)
            self._handle_waiting_approval()

    def _handle_waiting_approval(self) -> None:
        context = self._require_context()
        logger.info(
            'Waiting for authorization approval. '
            'Please approve this worker in the web UI'
        )
        if context.approval_task is None or context.approval_task.done():
            context.approval_task = asyncio.create_task(
                self._poll_for_approval(), name='approval poll'
            )

    async def _poll_for_approval(self) -> None:
        context = self._require_context()
        config = context.config
        while self.fsm.is_state(WorkerState.WAITING_APPROVAL):
            await asyncio.sleep(config.approval_poll_interval)
            if not self.fsm.is_state(WorkerState.WAITING_APPROVAL):
                return
            try:
                result = await context.store.register(
                    config.machine_id, config.worker_id, config.secret
                )
                if not result.approved:
                    logger.debug('Still waiting for approval')
                    continue
                logger.info('Worker approved! Continuing...')
                self.fsm.transition(WorkerEvent.APPROVED)
                await self._handle_connecting()
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f'Error checking approval: {e}')
                # Recovery may land in WAITING_APPROVAL again and must be
                # free to start a new poller.
                if context.approval_task is asyncio.current_task():
                    context.approval_task = None
                await self._recover_or_stop(e)
                return

    async def _handle_connecting(self) -> None:
        context = self._require_context()
        config = context.config
        logger.info('Connecting to agent runtime...')

        await self._teardown_connection()
        context.heartbeat.start()
        await context.registry.connect()

        notifier = EventNotifier(
            on_session_start=self._on_session_start,
            on_message=self._on_message,
            on_connect=self._on_connect,
            resume_incomplete=config.resume_incomplete_messages,
        )
        notifier.attach(context.store, config.machine_id, config.worker_id)
        context.notifier = notifier
        context.sync_timer.start()

        self.fsm.transition(WorkerEvent.CONNECTED)
        self._recovery_attempts = 0
        logger.info('Worker is ready and connected. Listening for messages...')

    async def _teardown_connection(self) -> None:
        """Undo a previous connection phase, if any."""
        context = self.context
        if context is None:
            return
        if context.notifier is not None:
            context.notifier.close()
            context.notifier = None
        await context.sync_timer.stop()
        await context.heartbeat.stop()

    async def _shutdown(self) -> None:
        context = self.context
        if context is None:
            return

        approval_task, context.approval_task = context.approval_task, None
        if approval_task is not None and approval_task is not asyncio.current_task():
            approval_task.cancel()
            try:
                await approval_task
            except asyncio.CancelledError:
                pass

        await self._teardown_connection()

        try:
            await context.registry.disconnect_all()
        except Exception as e:
            logger.warning(f'Failed to disconnect sessions: {e}')
        try:
            await context.store.disconnect()
        except Exception as e:
            logger.warning(f'Failed to disconnect from coordination store: {e}')

    # -------------------------------------------------------------------------
    # Errors and recovery
    # -------------------------------------------------------------------------

    def _handle_error(self, error: BaseException) -> ErrorHandlingStrategy:
        """Capture ``error`` into the state machine and classify it."""
        logger.error(f'Error in worker lifecycle: {error}')
        self.fsm.set_error(error)

        if self.fsm.is_one_of(WorkerState.STOPPING, WorkerState.STOPPED):
            return ErrorHandlingStrategy.STOP

        if not self.fsm.is_state(WorkerState.ERROR):
            self.fsm.transition(WorkerEvent.ERROR)

        strategy = classify(error, self.fsm.previous_state)
        logger.info(f'Error strategy: {strategy}')
        return strategy

    async def _recover(self) -> bool:
        """Wait, then move ERROR -> REGISTERING. False when out of attempts."""
        config = self._require_context().config
        if self._recovery_attempts >= config.max_recovery_attempts:
            logger.error(
                f'Giving up after {self._recovery_attempts} recovery attempts'
            )
            return False
        self._recovery_attempts += 1
        logger.info(
            f'Attempting to recover ({self._recovery_attempts}/'
            f'{config.max_recovery_attempts})...'
        )
        await self._teardown_connection()
        if config.recovery_delay > 0:
            await asyncio.sleep(config.recovery_delay)
        if not self.fsm.is_state(WorkerState.ERROR):
            return False
        self.fsm.transition(WorkerEvent.RECOVER)
        return True

    async def _recover_or_stop(self, error: BaseException) -> None:
        """Error path for background work (approval polling, connect requests)."""
        strategy = self._handle_error(error)
        if strategy == ErrorHandlingStrategy.IGNORE:
            return
        if strategy == ErrorHandlingStrategy.RECOVER and await self._recover():
            failure = await self._run_registration()
            if failure is not None:
                logger.error(f'Recovery failed: {failure}')
            return
        await self.stop()

    # -------------------------------------------------------------------------
    # Notifier callbacks
    # -------------------------------------------------------------------------

    async def _on_connect(self) -> None:
        context = self._require_context()
        logger.info('Connect request: re-initializing agent runtime')
        try:
            await context.registry.connect()
            logger.info('Agent runtime connected and models published')
        except Exception as e:
            logger.error(f'Failed to connect agent runtime: {e}')
            await self._recover_or_stop(e)

    async def _on_session_start(self, chat_session_id: str) -> None:
        context = self._require_context()
        logger.info(f'Session start: {chat_session_id}')
        try:
            await context.registry.start_session(chat_session_id)
        except Exception as e:
            # Session failures never take the worker down.
            logger.error(
                f'Failed to start session {chat_session_id}: {e} '
                f'({classify(e, self.fsm.current_state)})'
            )

    async def _on_message(
        self,
        chat_session_id: str,
        message_id: str,
        content: str,
        model: str,
    ) -> None:
        context = self._require_context()
        logger.info(f'Message {message_id} in session {chat_session_id}')
        if not self.is_ready():
            logger.warning('Received message but worker is not ready')
            return
        if context.registry.get(chat_session_id) is None:
            # Sessions that predate this process are restored on first use.
            try:
                await context.registry.start_session(chat_session_id)
            except Exception as e:
                logger.warning(
                    f'Could not restore session {chat_session_id}: {e}'
                )
        try:
            await context.registry.process_message(
                chat_session_id, message_id, content, model or None
            )
        except Exception as e:
            logger.error(f'Failed to process message {message_id}: {e}')
