"""Outbound delivery package.

Interfaces:
  ``Forwarder``, ``DeliveryError``.
"""

from .forwarder import DeliveryError, Forwarder

__all__ = ["Forwarder", "DeliveryError"]
