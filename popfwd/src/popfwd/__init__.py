"""
Module: popfwd.__init__

What:
  Aggregate package exports for popfwd, the scheduled mailbox forwarder that
  drains remote POP3 mailboxes into a single destination account, and expose
  the release version.

Why:
  Entry points and the ``X-Mailer`` header both need one authoritative version
  string, and importers rely on stable subpackage names to assemble the
  fetch, dedupe and forward pipeline.

Interfaces:
  - __version__: Release string reported by ``popfwd --version``.
  - config: Configuration schema and loader.
  - core: Envelope transform and per-mailbox orchestration.
  - pop3: Retrieval session speaking POP3 over TLS.
  - smtp: Forwarder delivering to the destination account.
  - state: Crash-consistent history of forwarded message UIDs.
  - utils: Structured logging.
"""

__version__ = "1.0.0"

__all__ = [
    "__version__",
    "config",
    "core",
    "pop3",
    "smtp",
    "state",
    "utils",
]
