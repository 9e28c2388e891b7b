"""CLI wiring tests ensuring the Typer command maps outcomes to exit codes.

What:
  Validate ``popfwd`` end to end at the wiring level: configuration loading,
  history initialisation, orchestrator invocation, and the resulting exit code.

Why:
  The scheduler only sees the exit status. A regression that exits ``0`` after
  a failed mailbox would hide lost deliveries.

How:
  Use :class:`typer.testing.CliRunner` with the canned configuration in
  ``tests/data`` and replace :func:`popfwd.cli.build_orchestrator` with a stub
  returning a prepared :class:`RunResult`.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List

import pytest
from typer.testing import CliRunner

from popfwd import __version__
from popfwd.cli import app
from popfwd.core.orchestrator import RunResult
from tests.conftest import CONFIG_PATH


runner = CliRunner()


class _StubOrchestrator:
    def __init__(self, result: RunResult) -> None:
        self.result = result
        self.accounts: List[Any] = []

    def run(self, accounts):
        self.accounts = list(accounts)
        return self.result


@pytest.fixture
def state_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "state.json"
    monkeypatch.setenv("POPFWD_STATE_PATH", str(path))
    return path


def _install(monkeypatch: pytest.MonkeyPatch, result: RunResult) -> _StubOrchestrator:
    stub = _StubOrchestrator(result)
    monkeypatch.setattr("popfwd.cli.build_orchestrator", lambda runtime, history, logger: stub)
    return stub


def _records(output: str) -> list:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert result.output.strip() == f"popfwd {__version__}"


def test_clean_run_exits_zero(monkeypatch: pytest.MonkeyPatch, state_path: Path) -> None:
    stub = _install(monkeypatch, RunResult(forwarded=3, errors=0))

    result = runner.invoke(app, ["--config", str(CONFIG_PATH)])

    assert result.exit_code == 0
    assert [account.email for account in stub.accounts] == ["one@example.com", "two@example.com"]
    records = _records(result.output)
    assert records[0]["msg"] == "popfwd starting"
    assert records[0]["mailboxes"] == 2
    assert records[-1]["msg"] == "popfwd finished successfully"
    assert "dest-secret" not in result.output


def test_errors_exit_one(monkeypatch: pytest.MonkeyPatch, state_path: Path) -> None:
    _install(monkeypatch, RunResult(forwarded=1, errors=2))

    result = runner.invoke(app, ["-c", str(CONFIG_PATH)])

    assert result.exit_code == 1
    assert _records(result.output)[-1]["msg"] == "run completed with errors"


def test_config_path_from_environment(monkeypatch: pytest.MonkeyPatch, state_path: Path) -> None:
    _install(monkeypatch, RunResult(forwarded=0, errors=0))
    monkeypatch.setenv("POPFWD_CONFIG_PATH", str(CONFIG_PATH))

    result = runner.invoke(app, [])

    assert result.exit_code == 0


def test_missing_config_exits_one(tmp_path: Path) -> None:
    result = runner.invoke(app, ["--config", str(tmp_path / "absent.yml")])

    assert result.exit_code == 1
    assert "Error loading configuration" in result.output


def test_unreadable_state_exits_one(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    blocked = tmp_path / "state.json"
    blocked.mkdir()
    monkeypatch.setenv("POPFWD_STATE_PATH", str(blocked))
    stub = _install(monkeypatch, RunResult(forwarded=0, errors=0))

    result = runner.invoke(app, ["--config", str(CONFIG_PATH)])

    assert result.exit_code == 1
    assert stub.accounts == []
    assert _records(result.output)[-1]["msg"] == "failed to initialize state tracker"
