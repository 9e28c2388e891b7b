"""Crash-consistent history of forwarded message UIDs.

What:
  Provide a filesystem-backed membership set of ``(mailbox, UID)`` pairs that
  records which messages have already been forwarded, so repeated runs never
  forward them again.

Why:
  The scheduler re-invokes popfwd every few minutes. Without a durable record
  the same mail would be forwarded on every run whenever a server keeps a
  message after ``QUIT`` (a failed deletion, an abrupt close). The record must
  survive crashes at any instant without ever exposing a half-written file.

How:
  The whole state is held in memory as ``{mailbox: set(uid)}`` behind a lock.
  Every mutation serialises the entire snapshot to a temporary file in the
  target directory, fsyncs it, and renames it over the canonical path. A crash
  before the rename leaves the previous document intact.

Interfaces:
  :class:`HistoryStore` (``load``, ``contains``, ``add``, ``add_batch``,
  ``snapshot``), :class:`PersistError`, and the on-disk models
  :class:`HistoryDocument` / :class:`MailboxHistory`.

Invariants & Safety:
  - A UID is only ever added after its message was forwarded; the store never
    removes entries.
  - Mutations return only once the new snapshot has been renamed into place.
    When persistence fails the in-memory insert is rolled back.
  - Files are created with ``0600`` permissions inside a ``0700`` directory.
  - An undeserialisable document is replaced by an empty store and reported at
    ``WARN``: every historical message still on a server will be forwarded
    once more.
"""
from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterable, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..utils.logging import JsonLogger, get_logger


class PersistError(Exception):
    """The history snapshot could not be read or written."""


class MailboxHistory(BaseModel):
    """Forwarded UIDs for one mailbox, stored as ``{uid: true}``."""

    model_config = ConfigDict(extra="ignore")

    fetched_uids: Dict[str, bool] = Field(default_factory=dict)


class HistoryDocument(BaseModel):
    """Root of the persisted state file."""

    model_config = ConfigDict(extra="ignore")

    mailboxes: Dict[str, MailboxHistory] = Field(default_factory=dict)


class HistoryStore:
    """Durable ``(mailbox, UID)`` membership set.

    What:
      Answers "was this message already forwarded?" and records newly
      forwarded messages.

    Why:
      Deduplication is the whole point of popfwd; it must be correct even when
      the process is killed between any two instructions.

    How:
      Loads the snapshot once via :meth:`load`, serves lookups from memory, and
      rewrites the full snapshot atomically on every mutation.
    """

    def __init__(
        self,
        path: Path | str,
        mailboxes: Optional[Dict[str, Set[str]]] = None,
        *,
        logger: Optional[JsonLogger] = None,
    ) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._mailboxes: Dict[str, Set[str]] = {
            name: set(uids) for name, uids in (mailboxes or {}).items()
        }
        self._logger = logger or get_logger("popfwd.state")

    @property
    def path(self) -> Path:
        return self._path

    @classmethod
    def load(cls, path: Path | str, *, logger: Optional[JsonLogger] = None) -> "HistoryStore":
        """Open the store backed by ``path``.

        What:
          Returns a store populated from the canonical file.

        How:
          A missing file yields an empty store. Content that is not valid JSON,
          or does not match :class:`HistoryDocument`, is logged at ``WARN`` and
          also yields an empty store; the corrupt file is overwritten by the
          next successful mutation.

        Args:
          path: Canonical location of the state document.
          logger: Optional logger for the corruption diagnostic.

        Returns:
          A ready :class:`HistoryStore`.

        Raises:
          PersistError: When the file exists but cannot be read.
        """

        log = logger or get_logger("popfwd.state")
        location = Path(path)
        try:
            data = location.read_bytes()
        except FileNotFoundError:
            return cls(location, logger=log)
        except OSError as exc:
            raise PersistError(f"loading state from {location}: {exc}") from exc
        try:
            document = HistoryDocument.model_validate_json(data)
        except ValidationError as exc:
            log.warning(
                "history state unreadable, starting empty",
                path=str(location),
                error=str(exc).splitlines()[0],
            )
            return cls(location, logger=log)
        mailboxes = {
            name: {uid for uid, seen in entry.fetched_uids.items() if seen}
            for name, entry in document.mailboxes.items()
        }
        return cls(location, mailboxes, logger=log)

    def contains(self, mailbox: str, uid: str) -> bool:
        with self._lock:
            return uid in self._mailboxes.get(mailbox, ())

    def add(self, mailbox: str, uid: str) -> None:
        """Record ``uid`` for ``mailbox`` and persist before returning.

        Raises:
          PersistError: When the snapshot could not be written; the in-memory
          state is left as it was before the call.
        """

        self.add_batch(mailbox, [uid])

    def add_batch(self, mailbox: str, uids: Iterable[str]) -> None:
        """Record several UIDs for ``mailbox`` with a single snapshot write.

        Raises:
          PersistError: When the snapshot could not be written; none of the
          UIDs remain recorded in memory.
        """

        with self._lock:
            existing = self._mailboxes.get(mailbox)
            known = set(existing) if existing is not None else set()
            added = [uid for uid in dict.fromkeys(uids) if uid not in known]
            self._mailboxes.setdefault(mailbox, set()).update(added)
            try:
                self._persist()
            except PersistError:
                if existing is None:
                    self._mailboxes.pop(mailbox, None)
                else:
                    existing.difference_update(added)
                raise

    def snapshot(self) -> Dict[str, int]:
        """Return the number of tracked UIDs per mailbox."""

        with self._lock:
            return {name: len(uids) for name, uids in self._mailboxes.items()}

    def _document(self) -> HistoryDocument:
        return HistoryDocument(
            mailboxes={
                name: MailboxHistory(fetched_uids={uid: True for uid in sorted(uids)})
                for name, uids in sorted(self._mailboxes.items())
            }
        )

    def _persist(self) -> None:
        """Write the full snapshot to a temp file and rename it into place.

        What:
          Replace the canonical state file with the current in-memory snapshot.

        How:
          - Create the parent directory (``0700``) when missing.
          - Write JSON to a ``NamedTemporaryFile`` in the same directory (created
            ``0600`` by :mod:`tempfile`), flush, and fsync it.
          - Rename it over the canonical path. On any failure up to and including
            the rename, remove the temporary file and raise :class:`PersistError`;
            the canonical file is untouched.
          - Fsync the directory so the rename itself is durable. A failure here
            is logged at ``WARN`` only, since the new snapshot is already in place.

        Must be called with ``self._lock`` held.
        """

        payload = self._document().model_dump_json(indent=2)
        directory = self._path.parent
        temp_path: Optional[Path] = None
        try:
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                dir=str(directory),
                prefix=f".{self._path.name}.",
                suffix=".tmp",
                delete=False,
                encoding="utf-8",
            ) as handle:
                temp_path = Path(handle.name)
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            temp_path.replace(self._path)
            temp_path = None
        except OSError as exc:
            raise PersistError(f"writing state file {self._path}: {exc}") from exc
        finally:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)

        # Rename already succeeded: a failed directory sync is reported, not rolled back.
        try:
            _fsync_directory(directory)
        except OSError as exc:
            self._logger.warning(
                "history directory sync failed",
                path=str(directory),
                error=str(exc),
            )


def _fsync_directory(directory: Path) -> None:
    descriptor = os.open(str(directory), os.O_RDONLY)
    try:
        os.fsync(descriptor)
    finally:
        os.close(descriptor)
