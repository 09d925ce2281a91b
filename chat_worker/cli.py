#!/usr/bin/env python3
"""
Chat Worker - connects a local OpenCode agent runtime to a Convex chat backend

This worker:
1. Registers itself with the coordination store and waits for approval
2. Starts OpenCode in the working directory and publishes its models
3. Listens for new chat sessions and messages and answers them with OpenCode
4. Periodically reconciles OpenCode sessions with the coordination store

Usage:
    chat-worker --token machine_x:worker_y:secret_z --convex-url https://foo.convex.cloud
    chat-worker --workers-json ~/.config/chat-worker/workers.json
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

from .config import (
    DEFAULT_WORKERS_JSON,
    WorkerConfig,
    load_workers_json,
    resolve_worker_config,
)
from .errors import ConfigurationError, WorkerError
from .lifecycle import LifecycleController
from .supervisor import WorkerSupervisor

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
SHUTDOWN_TIMEOUT = 30.0


def configure_logging(level: Optional[str] = None) -> None:
    level_name = (level or os.environ.get('WORKER_LOG_LEVEL') or 'INFO').upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version('chat-worker')
    except Exception:
        from chat_worker import __version__

        return __version__


def _print_about() -> None:
    print(f'Chat Worker {_get_version()}')
    print('\nOpenCode integration')
    print("- Prompts are executed by an 'opencode serve' process on this machine.")
    print('- OpenCode: https://opencode.ai (by its upstream authors and contributors)')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Chat Worker')
    parser.add_argument(
        '--token',
        '-t',
        default=None,
        help='Worker token (machine_<id>:worker_<id>:secret_<secret>)',
    )
    parser.add_argument(
        '--convex-url', '-u', default=None, help='Convex deployment URL'
    )
    parser.add_argument(
        '--directory',
        '-d',
        default=None,
        help='Working directory for OpenCode (default: current directory)',
    )
    parser.add_argument('--config', '-c', help='Path to config file')
    parser.add_argument(
        '--workers-json',
        nargs='?',
        const=str(DEFAULT_WORKERS_JSON),
        default=None,
        help=f'Run every worker listed in a workers.json (default: {DEFAULT_WORKERS_JSON})',
    )
    parser.add_argument('--opencode', help='Path to opencode binary')
    parser.add_argument(
        '--status-port',
        type=int,
        default=None,
        help='Serve the status API on this port',
    )
    parser.add_argument(
        '--sync-interval',
        type=float,
        default=None,
        help='Session reconciliation interval in seconds (default: 60)',
    )
    parser.add_argument(
        '--resume-incomplete',
        action='store_true',
        default=None,
        help='Answer assistant messages left incomplete by a previous run',
    )
    parser.add_argument(
        '--log-level',
        default=None,
        help='Logging level (default: INFO, or WORKER_LOG_LEVEL)',
    )
    parser.add_argument('--version', '-V', action='store_true')
    parser.add_argument('--about', action='store_true')
    return parser


def load_configs(args: argparse.Namespace) -> List[WorkerConfig]:
    options = {
        'opencode_bin': args.opencode,
        'sync_interval': args.sync_interval,
        'resume_incomplete_messages': args.resume_incomplete,
        'status_port': args.status_port,
    }
    if args.workers_json:
        return load_workers_json(Path(args.workers_json).expanduser(), **options)

    cli = {
        'token': args.token,
        'convex_url': args.convex_url,
        'working_directory': args.directory,
        **options,
    }
    return [resolve_worker_config(cli=cli, config_path=args.config)]


# =============================================================================
# Runtime
# =============================================================================


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def signal_handler():
        if stop_event.is_set():
            logger.info('Shutdown already in progress')
            return
        logger.info('Received shutdown signal')
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform/loop
            pass


async def start_status_server(
    controllers: Dict[str, LifecycleController], port: Optional[int]
) -> Optional[asyncio.Task]:
    if not port:
        return None
    import uvicorn

    from .status_api import create_status_app

    config = uvicorn.Config(
        create_status_app(controllers),
        host='127.0.0.1',
        port=port,
        log_level='warning',
    )
    server = uvicorn.Server(config)
    # Signals are handled by the worker, not by uvicorn.
    server.install_signal_handlers = lambda: None
    logger.info(f'Status API listening on http://127.0.0.1:{port}')
    task = asyncio.create_task(server.serve(), name='status api')
    task.server = server  # type: ignore[attr-defined]
    return task


async def stop_status_server(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    task.server.should_exit = True  # type: ignore[attr-defined]
    try:
        await asyncio.wait_for(task, timeout=5)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        task.cancel()
    except Exception as e:
        logger.debug(f'Status API exited with error: {e}')


async def _wait_any(*aws) -> None:
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()


async def run_worker(config: WorkerConfig, stop_event: asyncio.Event) -> int:
    controller = LifecycleController()
    status_task = await start_status_server(
        {config.worker_key: controller}, config.status_port
    )
    start_task = asyncio.create_task(controller.start(config))
    try:
        await _wait_any(start_task, stop_event.wait())
        if not start_task.done():
            start_task.cancel()
            try:
                await start_task
            except (asyncio.CancelledError, Exception):
                pass
            return 0
        try:
            start_task.result()
        except Exception as e:
            logger.error(f'Worker failed to start: {e}')
            return 1

        await _wait_any(stop_event.wait(), controller.wait_stopped())
        return 0 if stop_event.is_set() else 1
    finally:
        try:
            await asyncio.wait_for(controller.stop(), timeout=SHUTDOWN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error('Graceful shutdown timed out')
        await stop_status_server(status_task)


async def run_supervisor(
    configs: List[WorkerConfig], stop_event: asyncio.Event
) -> int:
    supervisor = WorkerSupervisor(configs)
    status_port = next((c.status_port for c in configs if c.status_port), None)
    status_task = await start_status_server(supervisor.controllers, status_port)
    try:
        try:
            await supervisor.start_all()
        except WorkerError as e:
            logger.error(str(e))
            return 1
        await stop_event.wait()
        return 0
    finally:
        try:
            await asyncio.wait_for(supervisor.stop_all(), timeout=SHUTDOWN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error('Graceful shutdown timed out')
        await stop_status_server(status_task)


async def async_main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        configs = load_configs(args)
    except ConfigurationError as e:
        logger.error(f'Failed to load configuration: {e}')
        return 1

    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)

    if len(configs) == 1 and not args.workers_json:
        return await run_worker(configs[0], stop_event)
    logger.info(f'Loaded {len(configs)} worker configuration(s)')
    return await run_supervisor(configs, stop_event)


def main() -> None:
    if any(arg in {'--version', '-V'} for arg in sys.argv[1:]):
        # Keep --version machine-friendly (prints only the version string).
        print(_get_version())
        return

    if any(arg == '--about' for arg in sys.argv[1:]):
        _print_about()
        return

    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == '__main__':
    main()
