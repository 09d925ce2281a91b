"""Chat worker: connects a local OpenCode agent runtime to a Convex chat backend.

Entry point: ``chat-worker`` (see :mod:`chat_worker.cli`).
"""

__all__ = ['__version__']

# Keep version in sync with setup.py for now.
__version__ = '0.1.0'
