"""POP3-over-TLS retrieval session with explicit framing and deadlines.

What:
  Own one encrypted connection to one mailbox and speak the POP3
  command/response and multi-line sub-protocols: greeting, ``USER``/``PASS``,
  ``UIDL``, ``RETR``, ``DELE`` and ``QUIT``.

Why:
  The fetch pipeline depends on exact framing rules (CRLF-terminated lines, a
  lone ``.`` ending a block, byte-stuffed leading dots) and on the server's
  deferred-deletion contract. Keeping them in one small, transport-agnostic
  class lets tests drive it with a scripted socket and keeps the orchestrator
  free of wire details.

How:
  :meth:`RetrievalSession.open` dials the endpoint with a TLS 1.2+ context and
  consumes the greeting. Every command arms a deadline of ``timeout`` seconds
  that bounds the whole round trip, multi-line blocks included; each socket
  read is given only the time remaining before that deadline.

Interfaces:
  :class:`RetrievalSession`, :class:`RetrievalError` and its subclasses
  :class:`ConnectionFailedError`, :class:`AuthError`, :class:`ProtocolError`,
  :class:`FetchError`, :class:`DeleteError`.

Invariants & Safety:
  - ``DELE`` only flags a message; removal is committed by a clean
    :meth:`close` (``QUIT``). An unclean close drops the transport without
    ``QUIT`` so the server discards every pending deletion.
  - Sequence numbers are only valid for the session that listed them; UIDs
    are the only identifiers meant to be persisted.
  - Credentials are never included in exception messages.
"""
from __future__ import annotations

import socket
import ssl
import time
from typing import Any, Dict, List, Optional

POP3_SSL_PORT = 995
DEFAULT_TIMEOUT = 30.0
MAXLINE = 1 << 20

CRLF = b"\r\n"
TERMINATOR = b"."
POSITIVE = b"+OK"
NEGATIVE = b"-ERR"


class RetrievalError(Exception):
    """Base class for every failure raised by :class:`RetrievalSession`."""


class ConnectionFailedError(RetrievalError):
    """The transport or TLS handshake could not be established."""


class AuthError(RetrievalError):
    """The server rejected ``USER`` or ``PASS``."""


class ProtocolError(RetrievalError):
    """Negative or malformed response, I/O failure, or deadline expiry."""


class FetchError(ProtocolError):
    """``RETR`` failed or the message block ended before its terminator."""


class DeleteError(ProtocolError):
    """``DELE`` was refused or could not be exchanged."""


def default_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


class RetrievalSession:
    """One POP3 conversation over an already-connected socket.

    What:
      Exchanges commands on ``sock`` and decodes single-line and multi-line
      responses.

    Why:
      Separating construction from dialing lets unit tests hand in a scripted
      socket while production code goes through :meth:`open`.

    How:
      Wraps ``sock`` in a buffered binary reader. :meth:`_command` writes one
      CRLF-terminated request, arms the deadline, and reads the status line;
      :meth:`_read_block` reads lines until the lone terminator.
    """

    def __init__(self, sock: Any, *, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._sock = sock
        self._reader = sock.makefile("rb")
        self._timeout = timeout
        self._deadline: Optional[float] = None
        self._closed = False
        self.greeting = b""

    @classmethod
    def open(
        cls,
        host: str,
        port: int = POP3_SSL_PORT,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> "RetrievalSession":
        """Dial ``host:port`` over TLS and consume the server greeting.

        What:
          Returns a session ready for :meth:`authenticate`.

        How:
          Opens a TCP connection bounded by ``timeout``, wraps it with
          ``ssl_context`` (TLS 1.2 minimum by default), then reads the greeting
          under the same deadline. The socket is closed again when the greeting
          is negative or malformed.

        Args:
          host: POP3S server name; also used for certificate verification.
          port: POP3S port, 995 by default.
          timeout: Per-operation deadline in seconds.
          ssl_context: Optional pre-built TLS context.

        Returns:
          The connected :class:`RetrievalSession`.

        Raises:
          ConnectionFailedError: On DNS, TCP, or TLS failure.
          ProtocolError: When the greeting is negative or malformed.
        """

        context = ssl_context or default_ssl_context()
        try:
            raw = socket.create_connection((host, port), timeout=timeout)
        except OSError as exc:
            raise ConnectionFailedError(f"pop3 dial {host}:{port}: {exc}") from exc
        try:
            sock = context.wrap_socket(raw, server_hostname=host)
        except (ssl.SSLError, OSError) as exc:
            raw.close()
            raise ConnectionFailedError(f"pop3 tls {host}:{port}: {exc}") from exc
        session = cls(sock, timeout=timeout)
        try:
            session.read_greeting()
        except ProtocolError:
            session.close(clean=False)
            raise
        return session

    def read_greeting(self) -> bytes:
        """Consume the initial ``+OK`` line sent by the server on connect."""

        self._arm()
        line = self._readline()
        if not line.startswith(POSITIVE):
            raise ProtocolError(f"pop3 greeting: unexpected response {_preview(line)}")
        self.greeting = line
        return line

    def authenticate(self, identity: str, secret: str) -> None:
        """Log in with ``USER``/``PASS``.

        A negative response to either step raises :class:`AuthError`; the
        connection stays open and the caller decides whether to abort.
        """

        try:
            self._command(f"USER {identity}")
        except _NegativeResponse as exc:
            raise AuthError(f"pop3 USER rejected: {exc}") from None
        try:
            self._command(f"PASS {secret}", log_safe="PASS")
        except _NegativeResponse as exc:
            raise AuthError(f"pop3 PASS rejected: {exc}") from None

    def list_all(self) -> Dict[int, str]:
        """Return ``{sequence number: UID}`` for every visible message.

        What:
          Issues ``UIDL`` and decodes the terminated block.

        How:
          Lines that do not match ``<integer> <token>`` are skipped so that
          proxy or server noise cannot abort the mailbox. The UID is the rest of
          the line after the first separator, stripped of surrounding
          whitespace.

        Raises:
          ProtocolError: On a negative response or an I/O failure mid-block.
        """

        try:
            self._command("UIDL")
        except _NegativeResponse as exc:
            raise ProtocolError(f"pop3 UIDL: {exc}") from None
        listing: Dict[int, str] = {}
        for line in self._read_block("UIDL"):
            parts = line.rstrip(b"\r\n").split(None, 1)
            if len(parts) != 2:
                continue
            number, uid = parts
            try:
                sequence = int(number)
            except ValueError:
                continue
            uid_text = uid.strip().decode("utf-8", errors="replace")
            if uid_text:
                listing[sequence] = uid_text
        return listing

    def fetch(self, sequence: int) -> bytes:
        """Retrieve the complete raw message for ``sequence``.

        What:
          Returns every header and body line exactly as sent, minus the
          terminator line, with byte-stuffing removed.

        How:
          Issues ``RETR`` and reads the block. A line beginning with ``..``
          loses exactly one leading dot before being appended.

        Raises:
          FetchError: On a negative response, I/O failure, or a stream that
          ends before the terminator.
        """

        try:
            self._command(f"RETR {sequence}")
        except _NegativeResponse as exc:
            raise FetchError(f"pop3 RETR {sequence}: {exc}") from None
        except ProtocolError as exc:
            raise FetchError(f"pop3 RETR {sequence}: {exc}") from exc
        try:
            lines = self._read_block(f"RETR {sequence}")
        except ProtocolError as exc:
            raise FetchError(str(exc)) from exc
        return b"".join(lines)

    def mark_for_deletion(self, sequence: int) -> None:
        """Flag ``sequence`` with ``DELE``; the server commits it on ``QUIT``."""

        try:
            self._command(f"DELE {sequence}")
        except _NegativeResponse as exc:
            raise DeleteError(f"pop3 DELE {sequence}: {exc}") from None
        except ProtocolError as exc:
            raise DeleteError(f"pop3 DELE {sequence}: {exc}") from exc

    def close(self, clean: bool) -> None:
        """Terminate the session.

        What:
          With ``clean=True`` send ``QUIT`` (committing pending deletions) and
          then close the transport. With ``clean=False`` close the transport
          directly so the server rolls every deletion flag back.

        How:
          ``QUIT`` is best effort: a negative reply or I/O failure is swallowed
          because the transport is closed either way. Calling :meth:`close`
          twice is a no-op.
        """

        if self._closed:
            return
        self._closed = True
        try:
            if clean:
                try:
                    self._command("QUIT")
                except (RetrievalError, _NegativeResponse):
                    pass
        finally:
            try:
                self._reader.close()
            finally:
                self._sock.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def _arm(self) -> None:
        self._deadline = time.monotonic() + self._timeout

    def _command(self, line: str, *, log_safe: Optional[str] = None) -> bytes:
        label = log_safe or line
        self._arm()
        try:
            self._sock.sendall(line.encode("utf-8") + CRLF)
        except OSError as exc:
            raise ProtocolError(f"pop3 {label}: sending command: {exc}") from exc
        response = self._readline()
        if response.startswith(POSITIVE):
            return response
        if response.startswith(NEGATIVE):
            raise _NegativeResponse(_preview(response))
        raise ProtocolError(f"pop3 {label}: malformed response {_preview(response)}")

    def _readline(self) -> bytes:
        """Read one CRLF-terminated line before the armed deadline expires."""

        remaining = DEFAULT_TIMEOUT if self._deadline is None else self._deadline - time.monotonic()
        if remaining <= 0:
            raise ProtocolError("pop3: deadline exceeded")
        try:
            self._sock.settimeout(remaining)
            line = self._reader.readline(MAXLINE + 1)
        except socket.timeout as exc:
            raise ProtocolError("pop3: deadline exceeded") from exc
        except OSError as exc:
            raise ProtocolError(f"pop3: read failed: {exc}") from exc
        if len(line) > MAXLINE:
            raise ProtocolError("pop3: line too long")
        if not line.endswith(b"\n"):
            raise ProtocolError("pop3: server closed connection")
        return line

    def _read_block(self, label: str) -> List[bytes]:
        """Read a multi-line block up to the lone terminator, unstuffing dots."""

        lines: List[bytes] = []
        while True:
            try:
                line = self._readline()
            except ProtocolError as exc:
                raise ProtocolError(f"pop3 {label} read: {exc}") from exc
            if line.rstrip(b"\r\n") == TERMINATOR:
                return lines
            if line.startswith(TERMINATOR + TERMINATOR):
                line = line[1:]
            lines.append(line)


class _NegativeResponse(Exception):
    """Internal signal for an ``-ERR`` status line."""


def _preview(line: bytes) -> str:
    return line.rstrip(b"\r\n")[:200].decode("utf-8", errors="replace")
