"""Tests for per-mailbox orchestration and its ordering guarantees.

What:
  Run :class:`Orchestrator` against fake sessions, forwarders, and histories
  that share one call log.

Why:
  The forward -> record -> delete order and the clean/unclean close decision
  are what make popfwd lose no mail; they are asserted here directly.
"""

from __future__ import annotations

import json
from typing import List, Tuple

import pytest

from fakes import FakeForwarder, FakeHistory, FakeSession, ScriptedSocket
from popfwd.config.schema import MailboxAccount
from popfwd.core.orchestrator import MailboxState, Orchestrator
from popfwd.pop3.session import ConnectionFailedError, RetrievalSession

MSG_ABC = b"From: Jane <jane@x.com>\r\nSubject: first\r\n\r\nabc body\r\n"
MSG_DEF = b"From: bob@y.com\r\nSubject: second\r\n\r\ndef body\r\n"
MSG_GHI = b"From: eve@z.com\r\nSubject: third\r\n\r\nghi body\r\n"


def _records(log_stream) -> list:
    return [json.loads(line) for line in log_stream.getvalue().splitlines()]


def _orchestrator(history, forwarder, sessions, logger) -> Orchestrator:
    return Orchestrator(history, forwarder, lambda account: sessions[account.email], logger=logger)


def test_skips_seen_uid_and_forwards_the_rest(account: MailboxAccount, logger) -> None:
    calls: List[Tuple] = []
    session = FakeSession(calls, {1: ("abc", MSG_ABC), 2: ("def", MSG_DEF)})
    history = FakeHistory(calls, {account.email: {"abc"}})
    forwarder = FakeForwarder(calls)

    result = _orchestrator(history, forwarder, {account.email: session}, logger).process_mailbox(account)

    assert (result.forwarded, result.skipped, result.errors) == (1, 1, 0)
    assert result.state is MailboxState.DONE
    assert calls == [
        ("auth", account.email),
        ("list",),
        ("fetch", 2),
        ("send",),
        ("record", "def"),
        ("delete", 2),
        ("close", True),
    ]
    assert session.committed() == {2}
    assert b"X-Popfwd-Source: source@example.com\r\n" in forwarder.sent[0]


def test_forward_failure_leaves_message_and_continues(account: MailboxAccount, logger, log_stream) -> None:
    calls: List[Tuple] = []
    session = FakeSession(calls, {1: ("abc", MSG_ABC), 2: ("def", MSG_DEF)})
    history = FakeHistory(calls)
    forwarder = FakeForwarder(calls, fail_marker=b"abc body")

    result = _orchestrator(history, forwarder, {account.email: session}, logger).process_mailbox(account)

    assert (result.forwarded, result.errors) == (1, 1)
    assert not history.contains(account.email, "abc")
    assert history.contains(account.email, "def")
    assert ("delete", 1) not in calls
    assert session.committed() == {2}
    failures = [r for r in _records(log_stream) if r["msg"] == "forward failed"]
    assert failures and failures[0]["uid"] == "abc" and failures[0]["msg_num"] == 1


def test_record_failure_prevents_deletion(account: MailboxAccount, logger) -> None:
    calls: List[Tuple] = []
    session = FakeSession(calls, {1: ("abc", MSG_ABC)})
    history = FakeHistory(calls, fail_add=True)
    forwarder = FakeForwarder(calls)

    result = _orchestrator(history, forwarder, {account.email: session}, logger).process_mailbox(account)

    assert (result.forwarded, result.errors) == (0, 1)
    assert calls[-2:] == [("record", "abc"), ("close", True)]
    assert session.committed() == set()


def test_fetch_and_delete_failures_count_but_close_cleanly(account: MailboxAccount, logger) -> None:
    calls: List[Tuple] = []
    session = FakeSession(
        calls,
        {1: ("abc", MSG_ABC), 2: ("def", MSG_DEF), 3: ("ghi", MSG_GHI)},
        fail_fetch=[1],
        fail_delete=[2],
    )
    history = FakeHistory(calls)
    forwarder = FakeForwarder(calls)

    result = _orchestrator(history, forwarder, {account.email: session}, logger).process_mailbox(account)

    assert (result.forwarded, result.errors) == (1, 2)
    assert history.contains(account.email, "def")
    assert session.closed_clean is True
    assert session.committed() == {3}


def test_messages_are_visited_in_sequence_order(account: MailboxAccount, logger) -> None:
    calls: List[Tuple] = []
    session = FakeSession(calls, {3: ("ghi", MSG_GHI), 1: ("abc", MSG_ABC), 2: ("def", MSG_DEF)})
    orchestrator = _orchestrator(FakeHistory(calls), FakeForwarder(calls), {account.email: session}, logger)

    orchestrator.process_mailbox(account)

    assert [entry[1] for entry in calls if entry[0] == "fetch"] == [1, 2, 3]


def test_second_run_forwards_nothing(account: MailboxAccount, history, logger) -> None:
    calls: List[Tuple] = []
    messages = {1: ("abc", MSG_ABC), 2: ("def", MSG_DEF)}
    forwarder = FakeForwarder(calls)

    first = _orchestrator(history, forwarder, {account.email: FakeSession(calls, messages)}, logger)
    assert first.run([account]).forwarded == 2

    # Server kept the messages, as after a failed QUIT.
    again = _orchestrator(history, forwarder, {account.email: FakeSession(calls, messages)}, logger)
    result = again.run([account])

    assert (result.forwarded, result.errors) == (0, 0)
    assert result.mailboxes[0].skipped == 2
    assert len(forwarder.sent) == 2


def test_login_failure_aborts_with_unclean_close(account: MailboxAccount, logger) -> None:
    calls: List[Tuple] = []
    session = FakeSession(calls, {1: ("abc", MSG_ABC)}, fail_auth=True)

    result = _orchestrator(FakeHistory(calls), FakeForwarder(calls), {account.email: session}, logger).process_mailbox(account)

    assert result.state is MailboxState.ABORTED
    assert (result.forwarded, result.errors) == (0, 1)
    assert calls == [("auth", account.email), ("close", False)]


def test_listing_failure_aborts_with_unclean_close(account: MailboxAccount, logger) -> None:
    calls: List[Tuple] = []
    session = FakeSession(calls, {}, fail_list=True)

    result = _orchestrator(FakeHistory(calls), FakeForwarder(calls), {account.email: session}, logger).process_mailbox(account)

    assert result.state is MailboxState.ABORTED
    assert result.errors == 1
    assert calls[-1] == ("close", False)


def test_connect_failure_moves_to_next_mailbox(logger, log_stream) -> None:
    calls: List[Tuple] = []
    broken = MailboxAccount(email="broken@example.com", app_password="x")
    healthy = MailboxAccount(email="healthy@example.com", app_password="y")
    sessions = {healthy.email: FakeSession(calls, {1: ("abc", MSG_ABC)})}

    def factory(account: MailboxAccount):
        if account.email == broken.email:
            raise ConnectionFailedError("pop3 dial pop.mail.yahoo.com:995: refused")
        return sessions[account.email]

    orchestrator = Orchestrator(FakeHistory(calls), FakeForwarder(calls), factory, logger=logger)
    result = orchestrator.run([broken, healthy])

    assert (result.forwarded, result.errors) == (1, 1)
    assert not result.ok
    assert [m.state for m in result.mailboxes] == [MailboxState.ABORTED, MailboxState.DONE]
    records = _records(log_stream)
    connect = next(r for r in records if r["msg"] == "failed to connect")
    assert connect["mailbox"] == broken.email and connect["lvl"] == "ERROR"
    complete = next(r for r in records if r["msg"] == "fetch cycle complete")
    assert (complete["total_fetched"], complete["total_errors"]) == (1, 1)


def test_unexpected_exception_closes_uncleanly(account: MailboxAccount, logger) -> None:
    calls: List[Tuple] = []
    session = FakeSession(calls, {1: ("abc", MSG_ABC)})

    class Exploding(FakeForwarder):
        def send(self, message: bytes) -> None:
            raise RuntimeError("boom")

    orchestrator = _orchestrator(FakeHistory(calls), Exploding(calls), {account.email: session}, logger)

    with pytest.raises(RuntimeError):
        orchestrator.process_mailbox(account)

    assert session.closed_clean is False


def test_success_log_carries_bare_sender(account: MailboxAccount, logger, log_stream) -> None:
    calls: List[Tuple] = []
    session = FakeSession(calls, {1: ("abc", MSG_ABC)})

    _orchestrator(FakeHistory(calls), FakeForwarder(calls), {account.email: session}, logger).run([account])

    records = _records(log_stream)
    done = next(r for r in records if r["msg"] == "message forwarded and deleted")
    assert done["original_from"] == "jane@x.com"
    assert done["mailbox"] == account.email
    assert "source-secret" not in log_stream.getvalue()
    state = [r for r in records if r["msg"] == "state"]
    assert state[0]["mailbox"] == account.email and state[0]["tracked_uids"] == 1


def test_negative_quit_reply_does_not_stop_the_run(logger, log_stream) -> None:
    """A server refusing ``QUIT`` still lets every mailbox run to completion."""

    transcript = (
        b"+OK ready\r\n"
        b"+OK\r\n"
        b"+OK logged in\r\n"
        b"+OK\r\n"
        b".\r\n"
        b"-ERR some deleted messages not removed\r\n"
    )
    sockets: List[ScriptedSocket] = []

    def factory(account: MailboxAccount) -> RetrievalSession:
        sock = ScriptedSocket(transcript)
        sockets.append(sock)
        session = RetrievalSession(sock, timeout=5.0)
        session.read_greeting()
        return session

    first = MailboxAccount(email="first@example.com", app_password="x")
    second = MailboxAccount(email="second@example.com", app_password="y")
    orchestrator = Orchestrator(FakeHistory([]), FakeForwarder([]), factory, logger=logger)

    result = orchestrator.run([first, second])

    assert result.ok
    assert [m.state for m in result.mailboxes] == [MailboxState.DONE, MailboxState.DONE]
    assert [sock.commands[-1] for sock in sockets] == ["QUIT", "QUIT"]
    assert all(sock.closed for sock in sockets)
    assert any(r["msg"] == "fetch cycle complete" for r in _records(log_stream))
