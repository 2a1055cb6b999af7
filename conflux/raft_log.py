"""Raft log, vote and purge state kept in memory."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Iterable, Optional


@dataclass(frozen=True, order=True)
class LeaderId:
    """A committed leader: the term and the node that led it."""

    term: int
    node_id: int


@dataclass(frozen=True, order=True)
class LogId:
    """Position of an entry in the log together with its leader."""

    leader_id: LeaderId
    index: int


@dataclass(frozen=True)
class Vote:
    term: int
    node_id: int
    committed: bool = False


@dataclass(frozen=True)
class Entry:
    """A log entry; a payload of None marks a blank entry."""

    log_id: LogId
    payload: Any = None


@dataclass(frozen=True)
class LogState:
    last_purged_log_id: Optional[LogId]
    last_log_id: Optional[LogId]


class RaftLogStore:
    """Log entries keyed by index, plus the saved vote and last purged id."""

    def __init__(self) -> None:
        self._logs: dict[int, Entry] = {}
        self._last_purged_log_id: Optional[LogId] = None
        self._vote: Optional[Vote] = None
        self._lock = threading.RLock()

    def get_log_state(self) -> LogState:
        with self._lock:
            last = self._logs[max(self._logs)].log_id if self._logs else None
            return LogState(last_purged_log_id=self._last_purged_log_id, last_log_id=last)

    def save_vote(self, vote: Vote) -> None:
        with self._lock:
            self._vote = vote

    def read_vote(self) -> Optional[Vote]:
        with self._lock:
            return self._vote

    def append(self, entries: Iterable[Entry]) -> None:
        """Store entries, replacing any already held at the same index."""
        with self._lock:
            for entry in entries:
                self._logs[entry.log_id.index] = entry

    def truncate(self, log_id: LogId) -> None:
        """Remove every entry at or after the index of `log_id`."""
        with self._lock:
            for index in [i for i in self._logs if i >= log_id.index]:
                del self._logs[index]

    def purge(self, log_id: LogId) -> None:
        """Remove every entry up to and including `log_id`, and remember it."""
        with self._lock:
            for index in [i for i in self._logs if i <= log_id.index]:
                del self._logs[index]
            self._last_purged_log_id = log_id

    def try_get_log_entries(self, start: Optional[int] = None, stop: Optional[int] = None) -> list[Entry]:
        """Entries with start <= index < stop, in index order; None leaves a side open."""
        with self._lock:
            return [
                self._logs[index]
                for index in sorted(self._logs)
                if (start is None or index >= start) and (stop is None or index < stop)
            ]