"""
Execution journal: the durable, append-only record of which nodes of a
deployment instance have started, succeeded or failed.

A store hands out at most one open Journal per instance id at a time. The
journal refuses to append anything for a node once it has succeeded, so a
recorded success is never rewritten.
"""
from __future__ import annotations

import fcntl
import logging
import os
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from .errors import ConcurrentDeploymentError, JournalError
from .util import append_record, load_records

__all__ = [
    "JournalStatus",
    "NodeStatus",
    "JournalEntry",
    "Journal",
    "JournalStore",
    "MemoryJournalStore",
    "FileJournalStore",
]

logger = logging.getLogger(__name__)

_INSTANCE_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class JournalStatus(str, Enum):
    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NodeStatus(str, Enum):
    UNRESOLVED = "unresolved"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class JournalEntry:
    node_id: str
    status: JournalStatus
    result: Any = None
    error: Optional[str] = None
    fingerprint: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "JournalEntry":
        try:
            return cls(
                node_id=d["node_id"],
                status=JournalStatus(d["status"]),
                result=d.get("result"),
                error=d.get("error"),
                fingerprint=d.get("fingerprint"),
                timestamp=d.get("timestamp", 0.0),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise JournalError(f"Malformed journal entry {d!r}: {e}") from e


class Journal:
    """
    Open journal of one deployment instance.

    Entries are passed to ``sink`` (the store's durable write) before they
    become visible through the status queries. Safe to share between the
    executor's worker threads.
    """

    def __init__(
        self,
        instance_id: str,
        entries: List[JournalEntry],
        sink: Callable[[JournalEntry], None],
        on_close: Callable[[], None],
    ):
        self.instance_id = instance_id
        self._entries = list(entries)
        self._sink = sink
        self._on_close = on_close
        self._lock = threading.Lock()
        self._closed = False
        self._last: Dict[str, JournalEntry] = {}
        self._succeeded: Dict[str, JournalEntry] = {}
        for entry in self._entries:
            self._index(entry)

    def _index(self, entry: JournalEntry) -> None:
        self._last[entry.node_id] = entry
        if entry.status is JournalStatus.SUCCEEDED:
            self._succeeded.setdefault(entry.node_id, entry)

    @property
    def entries(self) -> List[JournalEntry]:
        with self._lock:
            return list(self._entries)

    def record(
        self,
        node_id: str,
        status: JournalStatus,
        result: Any = None,
        error: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> JournalEntry:
        status = JournalStatus(status)
        with self._lock:
            if self._closed:
                raise JournalError(f"Journal of '{self.instance_id}' is closed")
            if node_id in self._succeeded:
                raise JournalError(
                    f"Node '{node_id}' already succeeded in '{self.instance_id}'; its entry cannot be rewritten"
                )
            entry = JournalEntry(node_id, status, result, error, fingerprint)
            self._sink(entry)
            self._entries.append(entry)
            self._index(entry)
            return entry

    def status_of(self, node_id: str) -> NodeStatus:
        with self._lock:
            if node_id in self._succeeded:
                return NodeStatus.SUCCEEDED
            last = self._last.get(node_id)
            if last is not None and last.status is JournalStatus.FAILED:
                return NodeStatus.FAILED
        # never started, or started and interrupted before an outcome
        return NodeStatus.UNRESOLVED

    def was_attempted(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self._last

    def succeeded_entry(self, node_id: str) -> Optional[JournalEntry]:
        with self._lock:
            return self._succeeded.get(node_id)

    def result_of(self, node_id: str) -> Any:
        entry = self.succeeded_entry(node_id)
        if entry is None:
            raise KeyError(f"Node '{node_id}' has not succeeded in '{self.instance_id}'")
        return entry.result

    def succeeded_nodes(self) -> List[str]:
        with self._lock:
            return list(self._succeeded)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._on_close()

    def __enter__(self) -> "Journal":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class JournalStore(ABC):
    """Durable storage for journals, keyed by instance id."""

    @abstractmethod
    def open(self, instance_id: str) -> Journal:
        """Open the instance's journal for exclusive writing.

        Raises:
            ConcurrentDeploymentError: If another attempt holds the journal.
        """

    @abstractmethod
    def entries(self, instance_id: str) -> List[JournalEntry]:
        """Read the instance's log without taking ownership of it."""


class MemoryJournalStore(JournalStore):
    """Process-local store, for tests and dry runs."""

    def __init__(self):
        self._logs: Dict[str, List[JournalEntry]] = {}
        self._held: Set[str] = set()
        self._lock = threading.Lock()

    def open(self, instance_id: str) -> Journal:
        with self._lock:
            if instance_id in self._held:
                raise ConcurrentDeploymentError(instance_id)
            self._held.add(instance_id)
            log = self._logs.setdefault(instance_id, [])
            entries = list(log)

        def release() -> None:
            with self._lock:
                self._held.discard(instance_id)

        return Journal(instance_id, entries, log.append, release)

    def entries(self, instance_id: str) -> List[JournalEntry]:
        with self._lock:
            return list(self._logs.get(instance_id, []))


class FileJournalStore(JournalStore):
    """
    One directory per instance under ``root``: ``journal.pkl`` holds the
    length-prefixed pickled entries, ``journal.lock`` is held with an
    exclusive ``flock`` by the owning process and names its pid.

    The kernel drops the lock when the owner exits, so a crashed attempt
    never blocks the next one and a lock file left on disk means nothing by
    itself. POSIX only.
    """

    JOURNAL_FILE = "journal.pkl"
    LOCK_FILE = "journal.lock"

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _instance_dir(self, instance_id: str) -> Path:
        if not _INSTANCE_RE.match(instance_id) or instance_id in (".", ".."):
            raise JournalError(f"Invalid instance id: {instance_id!r}")
        return self.root / instance_id

    def open(self, instance_id: str) -> Journal:
        directory = self._instance_dir(instance_id)
        directory.mkdir(parents=True, exist_ok=True)
        journal_path = directory / self.JOURNAL_FILE

        lock_fd = self._acquire(directory / self.LOCK_FILE, instance_id)
        try:
            entries = self._read(journal_path, repair=True)
            f = journal_path.open("ab")
        except BaseException:
            _release(lock_fd)
            raise

        def release() -> None:
            f.close()
            _release(lock_fd)

        return Journal(instance_id, entries, lambda entry: append_record(f, entry.to_dict()), release)

    def entries(self, instance_id: str) -> List[JournalEntry]:
        return self._read(self._instance_dir(instance_id) / self.JOURNAL_FILE, repair=False)

    def _read(self, journal_path: Path, repair: bool) -> List[JournalEntry]:
        records, good_offset = load_records(journal_path)
        if repair and journal_path.exists() and journal_path.stat().st_size > good_offset:
            logger.warning(f"Truncating torn journal tail of {journal_path} at offset {good_offset}")
            with journal_path.open("r+b") as f:
                f.truncate(good_offset)
        entries = []
        for record in records:
            if not isinstance(record, dict):
                raise JournalError(f"Unexpected record type in {journal_path}: {type(record)}")
            entries.append(JournalEntry.from_dict(record))
        return entries

    def _acquire(self, lock_path: Path, instance_id: str) -> int:
        fd = os.open(lock_path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = _read_pid(fd)
            os.close(fd)
            raise ConcurrentDeploymentError(
                instance_id, f"locked by pid {holder}" if holder is not None else ""
            ) from None
        except BaseException:
            os.close(fd)
            raise

        previous = _read_pid(fd)
        if previous is not None and previous != os.getpid():
            logger.warning(f"Taking over lock of '{instance_id}' last held by pid {previous}")
        os.ftruncate(fd, 0)
        os.pwrite(fd, str(os.getpid()).encode(), 0)
        return fd


def _read_pid(fd: int) -> Optional[int]:
    try:
        return int(os.pread(fd, 32, 0).decode().strip())
    except (OSError, ValueError):
        return None


def _release(fd: int) -> None:
    # the lock file stays on disk, unlinking it would let a waiter lock a dead inode
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
