"""Helper utilities bridging the CLI with runtime subsystems.

What:
  Build the collaborators the orchestrator needs (retrieval session factory,
  forwarder, history store) from a validated :class:`RuntimeConfig`.

Why:
  Isolating construction keeps :mod:`popfwd.cli` focused on exit codes and
  lets the CLI tests replace a single seam instead of every collaborator.

Interfaces:
  ``session_factory``, ``build_orchestrator``.
"""
from __future__ import annotations

from typing import Optional

from .config.schema import MailboxAccount, RuntimeConfig
from .core.orchestrator import Orchestrator, SessionFactory
from .pop3.session import RetrievalSession
from .smtp.forwarder import Forwarder
from .state.history import HistoryStore
from .utils.logging import JsonLogger


def session_factory(timeout: float) -> SessionFactory:
    """Return a callable that opens a POP3S session for an account."""

    def _open(account: MailboxAccount) -> RetrievalSession:
        return RetrievalSession.open(account.pop3_host, account.pop3_port, timeout=timeout)

    return _open


def build_orchestrator(
    runtime: RuntimeConfig,
    *,
    history: HistoryStore,
    logger: JsonLogger,
    factory: Optional[SessionFactory] = None,
) -> Orchestrator:
    """Assemble an :class:`Orchestrator` for ``runtime``.

    What:
      Wire the forwarder for ``runtime.destination``, the POP3S session
      factory, and the already-loaded history store.

    How:
      Both network collaborators share ``runtime.timeout_seconds`` as their
      per-operation deadline. ``factory`` overrides the session factory.

    Args:
      runtime: Validated runtime configuration.
      history: Loaded history store.
      logger: Logger shared with the orchestrator.
      factory: Optional session factory override.

    Returns:
      A ready :class:`Orchestrator`.
    """

    forwarder = Forwarder(runtime.destination, timeout=runtime.timeout_seconds)
    return Orchestrator(
        history,
        forwarder,
        factory or session_factory(runtime.timeout_seconds),
        logger=logger,
    )
