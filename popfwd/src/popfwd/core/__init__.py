"""Core pipeline: envelope transform and per-mailbox orchestration.

Interfaces:
  ``transform``, ``extract_address``, ``TransformedMessage``, ``Orchestrator``,
  ``MailboxResult``, ``RunResult``, ``MailboxState``, ``MessageOutcome``.
"""

from .orchestrator import MailboxResult, MailboxState, MessageOutcome, Orchestrator, RunResult
from .transform import TransformedMessage, extract_address, transform

__all__ = [
    "transform",
    "extract_address",
    "TransformedMessage",
    "Orchestrator",
    "MailboxResult",
    "RunResult",
    "MailboxState",
    "MessageOutcome",
]
