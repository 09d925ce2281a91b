"""
Error taxonomy and recovery classification for the worker lifecycle.

Lifecycle-level failures are classified into a recovery strategy:

- network / transient failures -> RECOVER (re-register)
- authorization failures -> RECOVER (credentials may have been re-approved)
- configuration failures -> STOP
- anything unknown -> STOP

Per-session and per-message failures are contained by the session registry
and only reach the classifier by accident; they map to IGNORE.
"""

import asyncio
import logging
from enum import StrEnum
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)


class ErrorHandlingStrategy(StrEnum):
    """What the lifecycle controller should do after an error."""

    RECOVER = 'RECOVER'  # Re-enter REGISTERING
    STOP = 'STOP'  # Fatal, shut down
    IGNORE = 'IGNORE'  # Log and continue


class WorkerError(Exception):
    """Base class for all worker errors."""


class NetworkError(WorkerError):
    """Transient transport failure (connection refused, DNS, timeout)."""


class AuthorizationError(WorkerError):
    """Credentials rejected by the coordination store."""


class ConfigurationError(WorkerError):
    """Invalid or missing configuration. Never recoverable."""


class CoordinationError(WorkerError):
    """The coordination store returned an application-level error."""


class AgentRuntimeError(WorkerError):
    """The agent runtime failed to start, create a session or answer a prompt."""


class SessionInitTimeout(WorkerError):
    """A chat session could not be initialized in time."""


class SessionNotFoundError(WorkerError):
    """A message arrived for a session the registry does not know."""

    def __init__(self, chat_session_id: str):
        super().__init__(f'Session {chat_session_id} not found')
        self.chat_session_id = chat_session_id


class InvalidTransitionError(WorkerError):
    """A state machine event is not legal in the current state."""

    def __init__(self, state: str, event: str):
        super().__init__(
            f'Invalid transition: Cannot transition from {state} via {event}'
        )
        self.state = state
        self.event = event


class StateAssertionError(WorkerError):
    """The worker is not in the state an operation requires."""

    def __init__(self, expected: str, actual: str):
        super().__init__(
            f'Expected state {expected} but current state is {actual}'
        )
        self.expected = expected
        self.actual = actual


_TERMINAL_STATES = ('STOPPING', 'STOPPED')

_NETWORK_MARKERS = (
    'network',
    'connection',
    'timeout',
    'timed out',
    'econnrefused',
    'enotfound',
    'name or service not known',
    'temporary failure in name resolution',
)
_AUTH_MARKERS = (
    'unauthorized',
    'authentication',
    'invalid token',
    'forbidden',
)
_CONFIG_MARKERS = (
    'configuration',
    'invalid config',
    'missing required',
)


def _message(error: BaseException) -> str:
    return str(error).lower()


def is_network_error(error: BaseException) -> bool:
    if isinstance(
        error,
        (
            NetworkError,
            aiohttp.ClientConnectionError,
            asyncio.TimeoutError,
            ConnectionError,
        ),
    ):
        return True
    message = _message(error)
    return any(marker in message for marker in _NETWORK_MARKERS)


def is_auth_error(error: BaseException) -> bool:
    if isinstance(error, AuthorizationError):
        return True
    message = _message(error)
    return any(marker in message for marker in _AUTH_MARKERS)


def is_config_error(error: BaseException) -> bool:
    if isinstance(error, ConfigurationError):
        return True
    message = _message(error)
    return any(marker in message for marker in _CONFIG_MARKERS)


def classify(
    error: BaseException, state: Optional[str]
) -> ErrorHandlingStrategy:
    """Map an error and the state it happened in to a recovery strategy.

    Rules are applied in order; the first match wins.
    """
    if state in _TERMINAL_STATES:
        return ErrorHandlingStrategy.STOP

    # Typed config errors are fatal whatever their message says.
    if isinstance(error, ConfigurationError):
        return ErrorHandlingStrategy.STOP

    if isinstance(error, (SessionNotFoundError, SessionInitTimeout)):
        return ErrorHandlingStrategy.IGNORE

    if is_network_error(error):
        return ErrorHandlingStrategy.RECOVER

    if is_auth_error(error):
        return ErrorHandlingStrategy.RECOVER

    if is_config_error(error):
        return ErrorHandlingStrategy.STOP

    return ErrorHandlingStrategy.STOP


def describe_error(error: BaseException) -> str:
    """Short, user-facing rendering of an exception for chat output."""
    text = str(error) or type(error).__name__
    return f'Error: {text}'
