"""Per-mailbox fetch, dedupe, and forward orchestration.

What:
  Drive every configured mailbox through ``connecting -> authenticating ->
  listing -> processing -> closing -> done`` (or ``aborted``), and every unseen
  message through fetch, transform, forward, record, and delete.

Why:
  Correctness hinges on ordering. A message is forwarded strictly before its
  UID is recorded, and recorded strictly before it is flagged for deletion.
  The worst case is therefore a duplicate forward on a later run (forward
  succeeded, record failed or the process died), never lost mail.

How:
  :class:`Orchestrator` receives its collaborators (history store, forwarder,
  session factory, logger) at construction. :meth:`Orchestrator.process_mailbox`
  returns an immutable :class:`MailboxResult`; :meth:`Orchestrator.run` sums
  them into a :class:`RunResult`. Counters are returned values, never shared
  mutable state.

Interfaces:
  :class:`Orchestrator`, :class:`MailboxResult`, :class:`RunResult`,
  :class:`MailboxState`, :class:`MessageOutcome`.

Invariants & Safety:
  - Connection, login, and listing failures abort the mailbox with one error
    and an unclean close, so no deletion flag is ever committed.
  - Message-level failures (fetch, forward, record, delete) count one error
    each and move on to the next message.
  - Once listing succeeded the session is closed cleanly regardless of how many
    message-level errors occurred, committing the deletions that were flagged.
  - Messages are visited in ascending sequence-number order.
  - Delivery is at-least-once: a crash between forward and record re-forwards
    the message on the next run.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

from ..config.schema import MailboxAccount
from ..pop3.session import RetrievalError, RetrievalSession
from ..smtp.forwarder import DeliveryError, Forwarder
from ..state.history import HistoryStore, PersistError
from ..utils.logging import JsonLogger, get_logger
from .transform import extract_address, transform

SessionFactory = Callable[[MailboxAccount], RetrievalSession]


class MailboxState(str, enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    LISTING = "listing"
    PROCESSING = "processing_messages"
    CLOSING = "closing"
    DONE = "done"
    ABORTED = "aborted"


class MessageOutcome(str, enum.Enum):
    SKIPPED = "skipped"
    FORWARDED = "forwarded"
    FAILED = "failed"


@dataclass(frozen=True)
class MailboxResult:
    """Counters and terminal state for one mailbox."""

    mailbox: str
    forwarded: int = 0
    skipped: int = 0
    errors: int = 0
    state: MailboxState = MailboxState.DONE


@dataclass(frozen=True)
class RunResult:
    """Aggregate of every :class:`MailboxResult` in one invocation."""

    forwarded: int
    errors: int
    mailboxes: Tuple[MailboxResult, ...] = ()

    @property
    def ok(self) -> bool:
        return self.errors == 0


class Orchestrator:
    """Compose retrieval, transform, forwarding, and history per mailbox.

    What:
      Runs the complete cycle for a list of :class:`MailboxAccount` values.

    Why:
      Keeping sequencing in one class, with collaborators injected, lets tests
      assert the forward/record/delete ordering against fakes.

    How:
      Mailboxes are processed sequentially; each is driven to ``done`` or
      ``aborted`` before the next one starts.
    """

    def __init__(
        self,
        history: HistoryStore,
        forwarder: Forwarder,
        session_factory: SessionFactory,
        *,
        logger: Optional[JsonLogger] = None,
    ) -> None:
        self._history = history
        self._forwarder = forwarder
        self._session_factory = session_factory
        self._logger = logger or get_logger("popfwd.orchestrator")

    def run(self, accounts: Sequence[MailboxAccount]) -> RunResult:
        """Process every mailbox and aggregate ``(forwarded, errors)``."""

        self._logger.info("starting fetch cycle", mailboxes=len(accounts))
        results = tuple(
            self.process_mailbox(account, index=index) for index, account in enumerate(accounts)
        )
        outcome = RunResult(
            forwarded=sum(result.forwarded for result in results),
            errors=sum(result.errors for result in results),
            mailboxes=results,
        )
        self._logger.info(
            "fetch cycle complete",
            total_fetched=outcome.forwarded,
            total_errors=outcome.errors,
        )
        for mailbox, count in self._history.snapshot().items():
            self._logger.debug("state", mailbox=mailbox, tracked_uids=count)
        return outcome

    def process_mailbox(self, account: MailboxAccount, *, index: int = 0) -> MailboxResult:
        """Drive one mailbox through the session state machine.

        What:
          Connect, authenticate, list, process each message, and close.

        How:
          Failures before message processing return an ``aborted`` result with
          one error, closing any open session uncleanly. After listing, each
          message is handled by :meth:`_process_message` and the session is
          closed cleanly. An unexpected exception still closes the session
          uncleanly before propagating.

        Args:
          account: Mailbox to drain.
          index: Position in the configuration, used for log context.

        Returns:
          The mailbox's :class:`MailboxResult`.
        """

        log = self._logger.bind(mailbox=account.email, index=index)
        log.info("processing mailbox")

        state = MailboxState.CONNECTING
        try:
            session = self._session_factory(account)
        except RetrievalError as exc:
            log.error("failed to connect", error=str(exc))
            return MailboxResult(account.email, errors=1, state=MailboxState.ABORTED)

        try:
            state = MailboxState.AUTHENTICATING
            try:
                session.authenticate(account.email, account.app_password)
            except RetrievalError as exc:
                log.error("login failed", error=str(exc))
                session.close(clean=False)
                return MailboxResult(account.email, errors=1, state=MailboxState.ABORTED)
            log.debug("logged in successfully")

            state = MailboxState.LISTING
            try:
                listing = session.list_all()
            except RetrievalError as exc:
                log.error("listing failed", error=str(exc))
                session.close(clean=False)
                return MailboxResult(account.email, errors=1, state=MailboxState.ABORTED)
            log.info("found messages", total=len(listing))

            state = MailboxState.PROCESSING
            forwarded = skipped = errors = 0
            for sequence in sorted(listing):
                outcome = self._process_message(session, account, sequence, listing[sequence], log)
                if outcome is MessageOutcome.FORWARDED:
                    forwarded += 1
                elif outcome is MessageOutcome.SKIPPED:
                    skipped += 1
                else:
                    errors += 1

            state = MailboxState.CLOSING
            try:
                session.close(clean=True)
            except OSError as exc:
                log.warning("quit failed", error=str(exc))
        except BaseException:
            if state is not MailboxState.CLOSING:
                session.close(clean=False)
            raise

        log.info("mailbox processing complete", fetched=forwarded, skipped=skipped, errors=errors)
        return MailboxResult(
            account.email,
            forwarded=forwarded,
            skipped=skipped,
            errors=errors,
            state=MailboxState.DONE,
        )

    def _process_message(
        self,
        session: RetrievalSession,
        account: MailboxAccount,
        sequence: int,
        uid: str,
        log: JsonLogger,
    ) -> MessageOutcome:
        """Skip, or fetch -> transform -> forward -> record -> delete one message.

        Each step only runs when the previous one succeeded; any failure is
        logged with ``msg_num`` and ``uid`` and reported as ``FAILED``.
        """

        if self._history.contains(account.email, uid):
            log.debug("skipping already-fetched message", msg_num=sequence, uid=uid)
            return MessageOutcome.SKIPPED

        log.info("fetching message", msg_num=sequence, uid=uid)
        try:
            raw = session.fetch(sequence)
        except RetrievalError as exc:
            log.error("retrieve failed", msg_num=sequence, uid=uid, error=str(exc))
            return MessageOutcome.FAILED

        outgoing = transform(raw, account.email, self._forwarder.address)

        try:
            self._forwarder.send(outgoing.data)
        except DeliveryError as exc:
            log.error("forward failed", msg_num=sequence, uid=uid, error=str(exc))
            return MessageOutcome.FAILED

        try:
            self._history.add(account.email, uid)
        except PersistError as exc:
            log.error("state update failed", msg_num=sequence, uid=uid, error=str(exc))
            return MessageOutcome.FAILED

        try:
            session.mark_for_deletion(sequence)
        except RetrievalError as exc:
            log.error("delete failed", msg_num=sequence, uid=uid, error=str(exc))
            return MessageOutcome.FAILED

        log.info(
            "message forwarded and deleted",
            msg_num=sequence,
            uid=uid,
            original_from=extract_address(outgoing.original_from) if outgoing.original_from else None,
            parsed=outgoing.parsed,
        )
        return MessageOutcome.FORWARDED
