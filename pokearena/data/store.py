"""Storage interfaces for battles, the matchmaking queue and user stats.

The SQL implementations live in :mod:`pokearena.data.sql_store`. The
in-memory implementations below are the fallback used when no database is
configured: process-wide dicts guarded by a lock. They are NOT durable
across restarts and NOT shared between server instances, so they are only
suitable for local play, tests and single-process demos.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from pokearena.core.battle import Battle, BattleStatus, TurnLogEntry, utcnow
from pokearena.core.errors import BattleClosedError, ConcurrentUpdateError, NotFoundError
from pokearena.core.matchmaking import QueueEntry, QueueEntryStatus
from pokearena.core.ranking import UserStats


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class BattleStore(Protocol):
    """Persistence of battle records and their turn log."""

    backend: str

    def create(self, battle: Battle) -> str: ...

    def load(self, battle_id: str) -> Battle | None: ...

    def save(self, battle: Battle, expected_version: int) -> Battle:
        """Conditionally overwrite an ACTIVE battle still at ``expected_version``.

        Raises NotFoundError, BattleClosedError (row already terminal) or
        ConcurrentUpdateError (someone else wrote first).
        """
        ...

    def finalize(self, battle: Battle, expected_version: int) -> Battle:
        """Like save, but ``battle`` carries a terminal status."""
        ...

    def find_active(self, user_id: str) -> list[Battle]: ...

    def list_battles(
        self,
        user_id: str | None = None,
        status: BattleStatus | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[Battle], int]: ...

    def list_stale(self, before: datetime) -> list[Battle]: ...

    def append_turns(self, entries: list[TurnLogEntry]) -> None: ...

    def list_turns(self, battle_id: str) -> list[TurnLogEntry]: ...


class QueueStore(Protocol):
    """The matchmaking waiting list."""

    def get(self, user_id: str) -> QueueEntry | None: ...

    def list_waiting(self, exclude_user_id: str, limit: int = 5) -> list[QueueEntry]:
        """Waiting entries of other users, oldest first."""
        ...

    def insert(self, entry: QueueEntry) -> QueueEntry:
        """Insert an entry; returns the existing one if the user already has one."""
        ...

    def claim(self, entry_id: str, matched_with_user_id: str) -> bool:
        """Atomically move a WAITING entry to MATCHED. False if it was not waiting."""
        ...

    def attach_battle(self, entry_id: str, battle_id: str) -> None: ...

    def release(self, entry_id: str) -> None:
        """Undo a claim (MATCHED without battle -> WAITING)."""
        ...

    def delete(self, user_id: str) -> bool: ...


class StatsStore(Protocol):
    """Cumulative per-user battle statistics."""

    def get(self, user_id: str) -> UserStats | None: ...

    def update(
        self,
        user_id: str,
        display_name: str,
        mutate: Callable[[UserStats], None],
        default_rating: int,
    ) -> UserStats:
        """Load-or-create the user's row, apply ``mutate`` and write it back atomically."""
        ...

    def count_rated_above(self, rating: int) -> int: ...

    def list_ranked(self, limit: int = 10, offset: int = 0) -> list[UserStats]: ...

    def count_ranked(self) -> int: ...


# ---------------------------------------------------------------------------
# In-memory fallback
# ---------------------------------------------------------------------------

class InMemoryBattleStore:
    """Single-process, non-durable battle store."""

    backend = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._battles: dict[str, Battle] = {}
        self._turns: dict[str, list[TurnLogEntry]] = {}

    def create(self, battle: Battle) -> str:
        with self._lock:
            self._battles[battle.battle_id] = battle.model_copy(deep=True)
        return battle.battle_id

    def load(self, battle_id: str) -> Battle | None:
        with self._lock:
            battle = self._battles.get(battle_id)
            return battle.model_copy(deep=True) if battle else None

    def _write(self, battle: Battle, expected_version: int) -> Battle:
        with self._lock:
            current = self._battles.get(battle.battle_id)
            if current is None:
                raise NotFoundError(f"Battle {battle.battle_id} not found")
            if current.status.is_terminal:
                raise BattleClosedError("Battle is already finished")
            if current.version != expected_version:
                raise ConcurrentUpdateError("Battle was updated by another request")
            stored = battle.model_copy(deep=True)
            stored.version = expected_version + 1
            stored.updated_at = utcnow()
            self._battles[battle.battle_id] = stored
            return stored.model_copy(deep=True)

    def save(self, battle: Battle, expected_version: int) -> Battle:
        return self._write(battle, expected_version)

    def finalize(self, battle: Battle, expected_version: int) -> Battle:
        if battle.finished_at is None:
            battle.finished_at = utcnow()
        return self._write(battle, expected_version)

    def find_active(self, user_id: str) -> list[Battle]:
        with self._lock:
            return [
                b.model_copy(deep=True)
                for b in self._battles.values()
                if b.is_active and b.side_of(user_id) is not None
            ]

    def list_battles(
        self,
        user_id: str | None = None,
        status: BattleStatus | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[Battle], int]:
        with self._lock:
            battles = [
                b
                for b in self._battles.values()
                if (user_id is None or b.side_of(user_id) is not None)
                and (status is None or b.status == status)
            ]
        battles.sort(key=lambda b: b.started_at, reverse=True)
        page = battles[offset : offset + limit]
        return [b.model_copy(deep=True) for b in page], len(battles)

    def list_stale(self, before: datetime) -> list[Battle]:
        with self._lock:
            return [
                b.model_copy(deep=True)
                for b in self._battles.values()
                if b.is_active and b.updated_at < before
            ]

    def append_turns(self, entries: list[TurnLogEntry]) -> None:
        with self._lock:
            for entry in entries:
                self._turns.setdefault(entry.battle_id, []).append(entry.model_copy())

    def list_turns(self, battle_id: str) -> list[TurnLogEntry]:
        with self._lock:
            entries = list(self._turns.get(battle_id, []))
        return sorted(entries, key=lambda e: e.turn_number)


class InMemoryQueueStore:
    """Single-process matchmaking queue."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, QueueEntry] = {}  # keyed by user_id

    def get(self, user_id: str) -> QueueEntry | None:
        with self._lock:
            entry = self._entries.get(user_id)
            return entry.model_copy(deep=True) if entry else None

    def list_waiting(self, exclude_user_id: str, limit: int = 5) -> list[QueueEntry]:
        with self._lock:
            waiting = [
                e.model_copy(deep=True)
                for e in self._entries.values()
                if e.status == QueueEntryStatus.WAITING and e.user_id != exclude_user_id
            ]
        waiting.sort(key=lambda e: e.joined_at)
        return waiting[:limit]

    def insert(self, entry: QueueEntry) -> QueueEntry:
        with self._lock:
            existing = self._entries.get(entry.user_id)
            if existing is not None:
                return existing.model_copy(deep=True)
            self._entries[entry.user_id] = entry.model_copy(deep=True)
            return entry

    def _by_id(self, entry_id: str) -> QueueEntry | None:
        for entry in self._entries.values():
            if entry.entry_id == entry_id:
                return entry
        return None

    def claim(self, entry_id: str, matched_with_user_id: str) -> bool:
        with self._lock:
            entry = self._by_id(entry_id)
            if entry is None or entry.status != QueueEntryStatus.WAITING:
                return False
            entry.status = QueueEntryStatus.MATCHED
            entry.matched_with_user_id = matched_with_user_id
            return True

    def attach_battle(self, entry_id: str, battle_id: str) -> None:
        with self._lock:
            entry = self._by_id(entry_id)
            if entry is not None:
                entry.battle_id = battle_id

    def release(self, entry_id: str) -> None:
        with self._lock:
            entry = self._by_id(entry_id)
            if entry is not None and entry.battle_id is None:
                entry.status = QueueEntryStatus.WAITING
                entry.matched_with_user_id = None

    def delete(self, user_id: str) -> bool:
        with self._lock:
            return self._entries.pop(user_id, None) is not None


class InMemoryStatsStore:
    """Single-process user stats."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats: dict[str, UserStats] = {}

    def get(self, user_id: str) -> UserStats | None:
        with self._lock:
            stats = self._stats.get(user_id)
            return stats.model_copy(deep=True) if stats else None

    def update(
        self,
        user_id: str,
        display_name: str,
        mutate: Callable[[UserStats], None],
        default_rating: int,
    ) -> UserStats:
        with self._lock:
            stats = self._stats.get(user_id)
            if stats is None:
                stats = UserStats(
                    user_id=user_id,
                    display_name=display_name,
                    rating=default_rating,
                    peak_rating=default_rating,
                )
            else:
                stats = stats.model_copy(deep=True)
            stats.display_name = display_name or stats.display_name
            mutate(stats)
            stats.updated_at = utcnow()
            self._stats[user_id] = stats
            return stats.model_copy(deep=True)

    def count_rated_above(self, rating: int) -> int:
        with self._lock:
            return sum(1 for s in self._stats.values() if s.total_battles > 0 and s.rating > rating)

    def _ranked(self) -> list[UserStats]:
        ranked = [s for s in self._stats.values() if s.total_battles > 0]
        ranked.sort(key=lambda s: (-s.rating, s.user_id))
        return ranked

    def list_ranked(self, limit: int = 10, offset: int = 0) -> list[UserStats]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._ranked()[offset : offset + limit]]

    def count_ranked(self) -> int:
        with self._lock:
            return len(self._ranked())
