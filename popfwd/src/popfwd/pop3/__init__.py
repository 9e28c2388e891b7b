"""Facade for the POP3 retrieval layer.

What:
  Surface :class:`~popfwd.pop3.session.RetrievalSession` and its error
  hierarchy so the orchestrator never imports wire-level helpers.

Interfaces:
  ``RetrievalSession``, ``RetrievalError``, ``ConnectionFailedError``,
  ``AuthError``, ``ProtocolError``, ``FetchError``, ``DeleteError``.
"""

from .session import (
    AuthError,
    ConnectionFailedError,
    DeleteError,
    FetchError,
    ProtocolError,
    RetrievalError,
    RetrievalSession,
)

__all__ = [
    "RetrievalSession",
    "RetrievalError",
    "ConnectionFailedError",
    "AuthError",
    "ProtocolError",
    "FetchError",
    "DeleteError",
]
