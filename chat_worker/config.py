"""
Configuration for the chat worker.

A worker is identified by a worker token issued by the web UI:

    machine_<machine_id>:worker_<worker_id>:secret_<secret>

Values are resolved with the precedence CLI flag > environment > config file
> default. ``.env`` files are honoured through python-dotenv.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .ids import MachineId, MachineSecret, WorkerId

logger = logging.getLogger(__name__)

WORKER_TOKEN_PATTERN = re.compile(
    r'^machine_(?P<machine>[A-Za-z0-9_-]+)'
    r':worker_(?P<worker>[A-Za-z0-9_-]+)'
    r':secret_(?P<secret>[A-Za-z0-9_-]+)$'
)

DEFAULT_CONFIG_PATHS = [
    Path.home() / '.config' / 'chat-worker' / 'config.json',
    Path('/etc/chat-worker/config.json'),
    Path('worker-config.json'),
]

DEFAULT_WORKERS_JSON = Path.home() / '.config' / 'chat-worker' / 'workers.json'

_LOCAL_HOSTS = {'localhost', '127.0.0.1', '::1'}


@dataclass(frozen=True)
class WorkerConfig:
    """Immutable configuration bundle for one worker instance."""

    machine_id: MachineId
    worker_id: WorkerId
    secret: MachineSecret
    coordination_url: str
    working_directory: str
    # Timers (seconds)
    approval_poll_interval: float = 5.0
    heartbeat_interval: float = 30.0
    sync_interval: float = 60.0
    subscription_poll_interval: float = 1.0
    recovery_delay: float = 5.0
    max_recovery_attempts: int = 5
    # Reconciliation write batching
    sync_batch_size: int = 5
    sync_batch_delay: float = 0.2
    model_cache_ttl: float = 300.0
    history_size: int = 50
    # Re-dispatch assistant messages left incomplete by a previous process
    resume_incomplete_messages: bool = False
    opencode_bin: Optional[str] = None
    # Serve the status API on this port (disabled when None)
    status_port: Optional[int] = None

    @property
    def worker_key(self) -> str:
        return f'{self.machine_id}:{self.worker_id}'

    def with_overrides(self, **changes: Any) -> 'WorkerConfig':
        return replace(self, **changes)


def parse_worker_token(token: str) -> Dict[str, str]:
    """Split a worker token into machine id, worker id and secret."""
    match = WORKER_TOKEN_PATTERN.match((token or '').strip())
    if not match:
        raise ConfigurationError(
            'Invalid configuration: WORKER_TOKEN must be in format '
            'machine_<machine_id>:worker_<worker_id>:secret_<secret>'
        )
    return {
        'machine_id': match.group('machine'),
        'worker_id': match.group('worker'),
        'secret': match.group('secret'),
    }


def validate_coordination_url(url: str) -> str:
    if not url:
        raise ConfigurationError(
            'Missing required configuration: coordination URL (CONVEX_URL)'
        )
    parsed = urlparse(url)
    if parsed.scheme == 'https' and parsed.netloc:
        return url.rstrip('/')
    if parsed.scheme == 'http' and parsed.hostname in _LOCAL_HOSTS:
        return url.rstrip('/')
    raise ConfigurationError(
        f'Invalid configuration: coordination URL must use HTTPS: {url}'
    )


def expand_path(path: str) -> str:
    return os.path.abspath(os.path.expanduser(path))


def build_worker_config(
    token: str,
    coordination_url: str,
    working_directory: Optional[str] = None,
    **options: Any,
) -> WorkerConfig:
    """Validate raw values and build a :class:`WorkerConfig`."""
    parts = parse_worker_token(token)
    url = validate_coordination_url(coordination_url)
    directory = expand_path(working_directory or os.getcwd())
    if not os.path.isdir(directory):
        raise ConfigurationError(
            f'Invalid configuration: working directory does not exist: {directory}'
        )
    return WorkerConfig(
        machine_id=MachineId(parts['machine_id']),
        worker_id=WorkerId(parts['worker_id']),
        secret=MachineSecret(parts['secret']),
        coordination_url=url,
        working_directory=directory,
        **{k: v for k, v in options.items() if v is not None},
    )


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from a JSON file."""
    if config_path and Path(config_path).exists():
        try:
            with open(config_path) as f:
                return json.load(f)
        except Exception as e:
            logger.warning(f'Failed to load config from {config_path}: {e}')

    for path in DEFAULT_CONFIG_PATHS:
        try:
            if path.exists():
                with open(path) as f:
                    return json.load(f)
        except Exception:
            # Unreadable default locations are skipped (e.g. permissions)
            continue

    return {}


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, ''):
            return value
    return None


def resolve_worker_config(
    cli: Optional[Dict[str, Any]] = None,
    config_path: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> WorkerConfig:
    """Resolve a worker config from CLI values, environment and config file."""
    if env is None:
        load_dotenv()
        env = dict(os.environ)
    cli = cli or {}
    file_config = load_config_file(config_path)

    token = _first(
        cli.get('token'), env.get('WORKER_TOKEN'), file_config.get('token')
    )
    if not token:
        raise ConfigurationError(
            'Missing required configuration: WORKER_TOKEN'
        )
    url = _first(
        cli.get('convex_url'),
        env.get('CONVEX_URL'),
        file_config.get('convex_url'),
    )
    directory = _first(
        cli.get('working_directory'),
        env.get('WORKER_DIRECTORY'),
        file_config.get('working_directory'),
    )
    status_port = _first(
        cli.get('status_port'),
        env.get('WORKER_STATUS_PORT'),
        file_config.get('status_port'),
    )

    options: Dict[str, Any] = {}
    for key in (
        'approval_poll_interval',
        'heartbeat_interval',
        'sync_interval',
        'subscription_poll_interval',
        'sync_batch_size',
        'sync_batch_delay',
        'model_cache_ttl',
        'recovery_delay',
        'max_recovery_attempts',
        'resume_incomplete_messages',
        'opencode_bin',
    ):
        value = _first(cli.get(key), file_config.get(key))
        if value is not None:
            options[key] = value
    if status_port is not None:
        try:
            options['status_port'] = int(status_port)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f'Invalid configuration: status port must be an integer: {status_port!r}'
            )

    return build_worker_config(token, url, directory, **options)


# =============================================================================
# workers.json (multi-worker mode)
# =============================================================================


class WorkerConfigEntry(BaseModel):
    """One entry of ``workers.json``."""

    token: str = Field(..., min_length=1)
    working_directory: str = Field(..., min_length=1)
    convex_url: str = Field(..., min_length=1)

    @field_validator('token')
    @classmethod
    def _check_token(cls, value: str) -> str:
        if not WORKER_TOKEN_PATTERN.match(value.strip()):
            raise ValueError(
                'token must be in format machine_<id>:worker_<id>:secret_<secret>'
            )
        return value.strip()

    @field_validator('convex_url')
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith('https://'):
            raise ValueError('Convex URL must use HTTPS')
        return value


class WorkersFile(BaseModel):
    workers: List[WorkerConfigEntry] = Field(default_factory=list)


WORKERS_TEMPLATE = {
    'workers': [
        {
            'token': 'machine_abc123:worker_xyz789:secret_def456ghi789jkl012',
            'working_directory': '~/Documents/Projects/my-project',
            'convex_url': 'https://your-deployment.convex.cloud',
        }
    ]
}


def strip_json_comments(content: str) -> str:
    """Remove ``/* */`` and ``//`` comments, leaving ``://`` in URLs alone."""
    content = re.sub(r'/\*[\s\S]*?\*/', '', content)
    return re.sub(r'(?<!:)//.*$', '', content, flags=re.MULTILINE)


def write_workers_template(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(WORKERS_TEMPLATE, indent=2), encoding='utf-8')


def load_workers_json(
    path: Optional[Path] = None, **options: Any
) -> List[WorkerConfig]:
    """Parse and validate ``workers.json`` into worker configs."""
    path = Path(path or DEFAULT_WORKERS_JSON)
    if not path.exists():
        logger.info(f'Creating template configuration at: {path}')
        try:
            write_workers_template(path)
        except OSError as e:
            logger.warning(f'Could not write template to {path}: {e}')
        raise ConfigurationError(
            f'Missing required configuration: no workers configured. '
            f'A template has been created at {path}; edit it and run again.'
        )
    try:
        raw = json.loads(strip_json_comments(path.read_text(encoding='utf-8')))
        parsed = WorkersFile.model_validate(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f'Invalid configuration in {path}: {e}')
    except ValidationError as e:
        raise ConfigurationError(f'Invalid configuration in {path}: {e}')

    if not parsed.workers:
        raise ConfigurationError(
            f'Invalid configuration in {path}: no workers defined'
        )

    return [
        build_worker_config(
            entry.token,
            entry.convex_url,
            entry.working_directory,
            **options,
        )
        for entry in parsed.workers
    ]
