"""SMTP forwarder delivering transformed messages to the destination account.

What:
  Submit one fully-formed message per call to the configured destination
  address over an encrypted, authenticated SMTP session.

Why:
  The destination account is both the authenticated sender and the only
  recipient, which is what submission servers require for relayed mail. The
  forwarder knows nothing about history or header rules; it accepts bytes that
  :func:`popfwd.core.transform.transform` already prepared.

How:
  Each :meth:`Forwarder.send` opens a fresh :mod:`smtplib` connection bounded by
  the configured timeout. Port 465 uses implicit TLS; any other port upgrades
  with ``STARTTLS``. The session then logs in and sends the message with the
  destination as envelope sender and single recipient.

Interfaces:
  :class:`Forwarder`, :class:`DeliveryError`.

Invariants & Safety:
  - No connection is reused between messages.
  - Any transport, TLS, authentication, or submission failure surfaces as
    :class:`DeliveryError` chained to the original exception.
"""
from __future__ import annotations

import smtplib
import ssl
from typing import Optional

from ..config.schema import DestinationSettings

SMTPS_PORT = 465


class DeliveryError(Exception):
    """The message could not be handed to the destination server."""


def default_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


class Forwarder:
    """Send already-transformed messages to a single destination account."""

    def __init__(
        self,
        destination: DestinationSettings,
        *,
        timeout: float = 30.0,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self._destination = destination
        self._timeout = timeout
        self._ssl_context = ssl_context or default_ssl_context()

    @property
    def address(self) -> str:
        return self._destination.email

    def send(self, message: bytes) -> None:
        """Deliver ``message`` to the destination account.

        What:
          Connect, secure, authenticate, and submit ``message`` to exactly one
          recipient equal to the authenticated account.

        How:
          Uses :class:`smtplib.SMTP_SSL` on port 465 and :class:`smtplib.SMTP`
          followed by ``STARTTLS`` elsewhere. ``sendmail`` raising
          :class:`smtplib.SMTPRecipientsRefused` covers the refused-recipient
          case because there is a single recipient.

        Args:
          message: Complete RFC 5322 message bytes.

        Raises:
          DeliveryError: On any connection, TLS, auth, or submission failure.
        """

        host = self._destination.smtp_host
        port = self._destination.smtp_port
        address = self._destination.email
        try:
            if port == SMTPS_PORT:
                connection = smtplib.SMTP_SSL(
                    host, port, timeout=self._timeout, context=self._ssl_context
                )
            else:
                connection = smtplib.SMTP(host, port, timeout=self._timeout)
            with connection as smtp:
                smtp.ehlo()
                if port != SMTPS_PORT:
                    smtp.starttls(context=self._ssl_context)
                    smtp.ehlo()
                smtp.login(address, self._destination.app_password)
                smtp.sendmail(address, [address], message)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"smtp send via {host}:{port}: {exc}") from exc
