"""popfwd logging helpers with deterministic JSON emission and secret redaction.

What:
  Offer a tiny facade over Python streams so every popfwd component can emit
  JSON log lines with consistent fields, a configurable severity threshold, and
  automatic removal of credentials.

Why:
  popfwd runs unattended from a scheduler; operators inspect what happened by
  grepping the container output. A structured layout keeps parsing trivial
  while guaranteeing that app passwords never end up in log collectors.

How:
  Provide a :class:`JsonLogger` dataclass that accepts a target stream, a
  component tag, a minimum level, and bound context. ``extra`` dictionaries are
  merged with the bound context and scrubbed via a recursive redaction helper
  before being serialised with ``json.dump``.

Interfaces:
  :class:`JsonLogger`, :func:`get_logger`, :func:`parse_level`.

Invariants & Safety:
  - The emitted payload always includes an ISO8601 timestamp, severity, and
    component name so downstream tooling can index entries reliably.
  - Known secret keys (``password``, ``app_password``, ``secret``,
    ``credential``) are replaced with ``[redacted]`` even inside nested
    dictionaries.
  - Streams are flushed after every write to avoid losing diagnostics when the
    scheduler kills the process.
"""
from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional


REDACTED = "[redacted]"

LEVELS: Dict[str, int] = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}

_ALIASES = {"WARNING": "WARN"}


def parse_level(name: Optional[str]) -> str:
    """Normalise a configured verbosity into one of :data:`LEVELS`.

    Unknown or empty values fall back to ``INFO``.
    """

    if not name:
        return "INFO"
    upper = name.strip().upper()
    upper = _ALIASES.get(upper, upper)
    return upper if upper in LEVELS else "INFO"


@dataclass
class JsonLogger:
    """Structured JSON logger with level filtering and automatic redaction.

    What:
      Encapsulates the logic required to emit single-line JSON log entries that
      include timestamps, severity, a component tag, bound context, and optional
      supplemental fields.

    Why:
      Centralising structured logging avoids duplicating the redaction logic and
      guarantees a uniform schema for both operators and test assertions.

    How:
      Stores the destination stream, component label, threshold, and bound
      context, then exposes helper methods (:meth:`debug`, :meth:`info`,
      :meth:`warning`, :meth:`error`) that merge a canonical payload with
      redacted extras before serialising the result using :mod:`json`.
    """

    stream: Any = field(default_factory=lambda: sys.stdout)
    component: str = "popfwd"
    level: str = "INFO"
    context: Dict[str, Any] = field(default_factory=dict)

    def bind(self, **context: Any) -> "JsonLogger":
        """Return a child logger that adds ``context`` to every record."""

        merged = dict(self.context)
        merged.update(context)
        return replace(self, context=merged)

    def enabled_for(self, level: str) -> bool:
        return LEVELS[parse_level(level)] >= LEVELS[parse_level(self.level)]

    def log(self, level: str, message: str, *, extra: Optional[Dict[str, Any]] = None) -> None:
        """Emit a structured JSON log entry.

        What:
          Serialises ``message``, bound context, and ``extra`` metadata to the
          configured stream using the popfwd log schema (``ts``, ``lvl``,
          ``msg``, ``component``).

        Why:
          All log entries should adhere to a predictable contract so monitoring
          and tests can parse them without ad-hoc heuristics.

        How:
          Drops the record when ``level`` is below the threshold. Otherwise
          builds a dictionary with the core fields, merges a redacted copy of
          the context and ``extra``, writes a JSON payload, and immediately
          flushes the stream.

        Args:
          level: Severity (``"debug"``, ``"info"``, ``"warn"``, ``"error"``).
          message: Core log message.
          extra: Optional context dictionary that will be redacted recursively.
        """

        if not self.enabled_for(level):
            return
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "lvl": parse_level(level),
            "msg": message,
            "component": self.component,
        }
        fields = dict(self.context)
        if extra:
            fields.update(extra)
        if fields:
            payload.update(self._redact(fields))
        json.dump(payload, self.stream, separators=(",", ":"), default=str)
        self.stream.write("\n")
        self.stream.flush()

    def debug(self, message: str, **kwargs: Any) -> None:
        self.log("DEBUG", message, extra=kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log an informational message with structured context."""

        self.log("INFO", message, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log a warning message while enforcing redaction.

        Used for degraded-but-continuing conditions such as a failed ``QUIT``
        or an unreadable history file that was replaced by an empty store.
        """

        self.log("WARN", message, extra=kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log an error entry; every per-message failure goes through here."""

        self.log("ERROR", message, extra=kwargs)

    @staticmethod
    def _redact(data: Dict[str, Any]) -> Dict[str, Any]:
        """Remove secret keys from a payload recursively.

        What:
          Produces a copy of ``data`` where credential fields are replaced with
          the sentinel ``[redacted]`` string.

        Why:
          Configuration objects carry app passwords for both the source
          mailboxes and the destination. Logging a config fragment must never
          disclose them.

        How:
          Walks the dictionary, applying the sentinel to known keys and recursing
          into nested dictionaries to ensure deep redaction while preserving
          structure for downstream parsing.

        Args:
          data: Arbitrary metadata to sanitise.

        Returns:
          A copy of ``data`` with secret values masked.
        """

        sensitive_keys = {"password", "app_password", "secret", "credential"}
        result: Dict[str, Any] = {}
        for key, value in data.items():
            if key in sensitive_keys:
                result[key] = REDACTED
            elif isinstance(value, dict):
                result[key] = JsonLogger._redact(value)
            else:
                result[key] = value
        return result


def get_logger(component: str, *, level: str = "INFO", stream: Any = None) -> JsonLogger:
    """Construct a :class:`JsonLogger` for the requested component.

    Args:
      component: Logical subsystem name to include in log payloads.
      level: Minimum severity to emit; see :func:`parse_level`.
      stream: Optional destination, defaults to ``stdout``.

    Returns:
      Configured :class:`JsonLogger` instance.
    """

    logger = JsonLogger(component=component, level=parse_level(level))
    if stream is not None:
        logger.stream = stream
    return logger
