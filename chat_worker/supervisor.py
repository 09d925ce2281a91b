"""
Multi-worker supervisor: one lifecycle controller per configured worker.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from .config import WorkerConfig
from .errors import WorkerError
from .lifecycle import LifecycleController, RuntimeFactory, StoreFactory
from .state_machine import WorkerState

logger = logging.getLogger(__name__)


@dataclass
class WorkerInstance:
    config: WorkerConfig
    controller: LifecycleController
    running: bool = False
    error: Optional[str] = None


class WorkerSupervisor:
    """Starts, tracks and stops a set of workers."""

    def __init__(
        self,
        configs: Iterable[WorkerConfig],
        store_factory: Optional[StoreFactory] = None,
        runtime_factory: Optional[RuntimeFactory] = None,
    ):
        self.workers: Dict[str, WorkerInstance] = {}
        for config in configs:
            key = config.worker_key
            if key in self.workers:
                logger.warning(f'Duplicate worker {key} ignored')
                continue
            self.workers[key] = WorkerInstance(
                config=config,
                controller=LifecycleController(store_factory, runtime_factory),
            )

    @property
    def controllers(self) -> Dict[str, LifecycleController]:
        return {key: w.controller for key, w in self.workers.items()}

    def running_count(self) -> int:
        return sum(1 for w in self.workers.values() if w.running)

    def states(self) -> Dict[str, WorkerState]:
        return {key: w.controller.get_state() for key, w in self.workers.items()}

    async def _start_one(self, instance: WorkerInstance) -> None:
        config = instance.config
        logger.info(
            f'Starting worker {config.worker_id} '
            f'(machine: {config.machine_id}, directory: {config.working_directory})'
        )
        try:
            await instance.controller.start(config)
            instance.running = True
            instance.error = None
            logger.info(f'Worker {config.worker_id} started')
        except Exception as e:
            instance.running = False
            instance.error = str(e)
            logger.error(f'Failed to start worker {config.worker_id}: {e}')

    async def start_all(self) -> int:
        """Start every worker concurrently. Returns how many are running."""
        logger.info(f'Starting {len(self.workers)} worker(s)...')
        await asyncio.gather(
            *(self._start_one(w) for w in self.workers.values())
        )
        running = self.running_count()
        if running == 0:
            raise WorkerError('Failed to start any workers')
        logger.info(f'{running} of {len(self.workers)} worker(s) started')
        return running

    async def _stop_one(self, instance: WorkerInstance) -> None:
        try:
            await instance.controller.stop()
            logger.info(f'Worker {instance.config.worker_id} stopped')
        except Exception as e:
            logger.error(
                f'Error stopping worker {instance.config.worker_id}: {e}'
            )
        finally:
            instance.running = False

    async def stop_all(self) -> None:
        running = [w for w in self.workers.values() if w.running]
        logger.info(f'Stopping {len(running)} running worker(s)...')
        await asyncio.gather(*(self._stop_one(w) for w in running))
        logger.info('All workers stopped')
