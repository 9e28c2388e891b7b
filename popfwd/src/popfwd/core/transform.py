"""Envelope transform turning a retrieved message into a forwardable one.

What:
  Rewrite the header block of a raw RFC 5322 message so that the destination
  relay accepts it from the authenticated account, while preserving who really
  sent it, who it was addressed to, and which mailbox it came from.

Why:
  Submission servers reject mail whose ``From`` differs from the authenticated
  account, and reusing the original ``Message-ID`` collides with the
  destination's own numbering. Filters and replies must still work, so the
  original metadata moves to ``X-Original-*`` and ``Reply-To`` headers.

How:
  Split the raw bytes at the first empty line and parse the header block with
  :class:`email.parser.BytesHeaderParser` under the ``compat32`` policy so
  values round-trip byte for byte. Input without an empty line is a
  headers-only message with an empty body. Empty input, or a non-header line
  in the block, counts as a parse failure, in which case the raw bytes pass
  through behind two marker headers. Otherwise build the new header list in a
  fixed order and append the untouched body.

Interfaces:
  :func:`transform`, :func:`extract_address`, :class:`TransformedMessage`.

Invariants:
  - Total and side-effect free: no input raises.
  - Body bytes are never modified.
  - Headers not explicitly handled keep their name, value, and relative order.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from email import errors, policy
from email.parser import BytesHeaderParser
from email.utils import parseaddr
from typing import List, Optional, Tuple

from .. import __version__

SOURCE_HEADER = "X-Popfwd-Source"
NOTE_HEADER = "X-Popfwd-Note"
PARSE_FAILURE_NOTE = "original message could not be parsed"
MAILER = f"popfwd/{__version__}"

_HANDLED = frozenset(
    {
        "from",
        "to",
        "subject",
        "date",
        "message-id",
        "cc",
        "reply-to",
        "content-type",
        "content-transfer-encoding",
        "mime-version",
    }
)

_FATAL_DEFECTS = (
    errors.MissingHeaderBodySeparatorDefect,
    errors.FirstHeaderLineIsContinuationDefect,
)

_FOLD = re.compile(r"\r?\n(?=[ \t])")

Header = Tuple[str, str]


@dataclass(frozen=True)
class TransformedMessage:
    """Outgoing bytes plus what the transform learned about the original."""

    data: bytes
    original_from: Optional[str]
    parsed: bool


def _split(raw: bytes) -> Optional[Tuple[bytes, bytes]]:
    start = 0
    while start < len(raw):
        end = raw.find(b"\n", start)
        if end == -1:
            return None
        line = raw[start : end + 1]
        if line in (b"\n", b"\r\n"):
            return raw[:start], raw[end + 1 :]
        start = end + 1
    return None


def _parse(raw: bytes) -> Optional[Tuple[List[Header], bytes]]:
    """Return ``(headers, body)`` or ``None`` when the header block is malformed."""

    split = _split(raw)
    if split is None:
        if not raw.strip():
            return None
        block, body = raw, b""
    else:
        block, body = split
    message = BytesHeaderParser(policy=policy.compat32).parsebytes(block)
    if any(isinstance(defect, _FATAL_DEFECTS) for defect in message.defects):
        return None
    headers = [(name, _FOLD.sub("", value).strip()) for name, value in message.raw_items()]
    return headers, body


def _first(headers: List[Header], name: str) -> str:
    wanted = name.lower()
    for key, value in headers:
        if key.lower() == wanted:
            return value
    return ""


def _encode(lines: List[Header]) -> bytes:
    text = "".join(f"{name}: {value}\r\n" for name, value in lines)
    return text.encode("utf-8", errors="surrogateescape")


def transform(raw: bytes, source: str, destination: str) -> TransformedMessage:
    """Build the outgoing message for ``raw`` retrieved from ``source``.

    What:
      Returns bytes addressed ``From``/``To`` the ``destination`` account with
      the original sender, recipients, and identifiers preserved.

    How:
      Headers are emitted in this order: ``From``, ``To``, ``Subject``,
      ``Date``, ``X-Original-From``, ``Resent-From``, ``X-Original-To``,
      ``X-Original-Cc``, ``Reply-To``, ``X-Original-Message-Id``, the source
      marker, ``X-Mailer``, the three MIME headers, then every other original
      header in its original order. Optional headers are skipped when absent.
      ``Reply-To`` prefers the original ``Reply-To`` and falls back to the
      original ``From``.

    Args:
      raw: Message as retrieved, headers and body.
      source: Address of the mailbox the message was retrieved from.
      destination: Address of the authenticated destination account.

    Returns:
      A :class:`TransformedMessage`; ``parsed`` is ``False`` for pass-through.
    """

    parsed = _parse(raw)
    if parsed is None:
        markers = _encode([(SOURCE_HEADER, source), (NOTE_HEADER, PARSE_FAILURE_NOTE)])
        return TransformedMessage(data=markers + raw, original_from=None, parsed=False)

    headers, body = parsed
    original_from = _first(headers, "From")
    original_reply_to = _first(headers, "Reply-To")

    lines: List[Header] = [("From", destination), ("To", destination)]
    for name in ("Subject", "Date"):
        value = _first(headers, name)
        if value:
            lines.append((name, value))
    if original_from:
        lines.append(("X-Original-From", original_from))
        lines.append(("Resent-From", original_from))
    for name, target in (("To", "X-Original-To"), ("Cc", "X-Original-Cc")):
        value = _first(headers, name)
        if value:
            lines.append((target, value))
    reply_to = original_reply_to or original_from
    if reply_to:
        lines.append(("Reply-To", reply_to))
    message_id = _first(headers, "Message-ID")
    if message_id:
        lines.append(("X-Original-Message-Id", message_id))
    lines.append((SOURCE_HEADER, source))
    lines.append(("X-Mailer", MAILER))
    for name in ("MIME-Version", "Content-Type", "Content-Transfer-Encoding"):
        value = _first(headers, name)
        if value:
            lines.append((name, value))
    lines.extend((name, value) for name, value in headers if name.lower() not in _HANDLED)

    return TransformedMessage(
        data=_encode(lines) + b"\r\n" + body,
        original_from=original_from or None,
        parsed=True,
    )


def extract_address(value: str) -> str:
    """Return the bare address from a ``From``-style header value.

    ``"Jane <jane@x.com>"`` and ``"jane@x.com"`` both yield ``jane@x.com``.
    Unparseable values fall back to the text between angle brackets, then to
    the trimmed input.
    """

    _, address = parseaddr(value)
    if address and "@" in address:
        return address
    start = value.find("<")
    if start >= 0:
        end = value.find(">", start)
        if end >= 0:
            return value[start + 1 : end]
    return value.strip()
