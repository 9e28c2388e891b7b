"""Persistence package for the forwarded-message history.

Interfaces:
  ``HistoryStore``, ``HistoryDocument``, ``MailboxHistory``, ``PersistError``.
"""

from .history import HistoryDocument, HistoryStore, MailboxHistory, PersistError

__all__ = ["HistoryStore", "HistoryDocument", "MailboxHistory", "PersistError"]
