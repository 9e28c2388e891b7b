"""Expose the public utility surface for popfwd.

What:
  Re-export the structured logging helpers so other packages can log without
  knowing the underlying module layout.

Interfaces:
  ``JsonLogger``, ``get_logger``, ``parse_level``.
"""

from .logging import JsonLogger, get_logger, parse_level

__all__ = ["JsonLogger", "get_logger", "parse_level"]
