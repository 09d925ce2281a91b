"""
Typed identifiers used across the worker.

Each identifier kind is its own ``str`` subclass so a worker id can never be
passed where a chat session id is expected without an explicit conversion.
Values are validated when constructed.
"""

import secrets
import string

_ALPHABET = string.ascii_letters + string.digits + '_-'


class _Identifier(str):
    """Non-empty, whitespace-trimmed string identifier."""

    kind = 'identifier'

    def __new__(cls, value: str):
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f'Invalid {cls.kind}: must be a non-empty string')
        return super().__new__(cls, value.strip())

    def __repr__(self) -> str:
        return f'{type(self).__name__}({str.__repr__(self)})'


class MachineId(_Identifier):
    kind = 'Machine ID'


class WorkerId(_Identifier):
    kind = 'Worker ID'


class ChatSessionId(_Identifier):
    """Stable key of a chat session in the coordination store."""

    kind = 'Chat Session ID'


class RemoteSessionId(_Identifier):
    """Session id assigned by the agent runtime."""

    kind = 'Remote Session ID'


class MessageId(_Identifier):
    kind = 'Message ID'


class MachineSecret(_Identifier):
    kind = 'Machine Secret'

    def __repr__(self) -> str:
        return 'MachineSecret(***)'


def generate_worker_id(length: int = 21) -> WorkerId:
    """Generate a new random worker id (``wkr_`` prefix)."""
    suffix = ''.join(secrets.choice(_ALPHABET) for _ in range(length))
    return WorkerId(f'wkr_{suffix}')
