"""Pytest configuration shared by every popfwd suite.

What:
  Put the in-repo source tree on ``sys.path`` and keep ``POPFWD_*`` variables
  from the developer's shell out of the tests.

Why:
  The loader honours environment overrides. A stray ``POPFWD_DEST_APP_PASSWORD``
  or ``POPFWD_CONFIG_PATH`` would silently change what a test observes.

Interfaces:
  :func:`clean_environment` (autouse fixture), :data:`CONFIG_PATH`.
"""

import os
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "popfwd" / "src"
if SRC_DIR.exists():
    sys.path.insert(0, str(SRC_DIR))

import pytest

CONFIG_PATH = Path(__file__).resolve().parent / "data" / "config.yaml"


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every ``POPFWD_*`` variable for the duration of a test."""

    for name in list(os.environ):
        if name.startswith("POPFWD_"):
            monkeypatch.delenv(name, raising=False)
