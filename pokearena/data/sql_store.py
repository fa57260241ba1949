"""SQLModel persistence for battles, the matchmaking queue and user stats.

Used when ``POKEARENA_DATABASE_URL`` is set (Postgres in production, SQLite
in tests). Every state transition of a battle is a conditional UPDATE:

    UPDATE battles SET ... WHERE battle_id = ? AND status = 'active' AND version = ?

so two requests racing on the same battle can never both succeed.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import delete, func, or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import JSON, Column, Field, Session, SQLModel, create_engine, select
from sqlmodel.pool import StaticPool

from pokearena.core.battle import Battle, BattleStatus, Side, TurnLogEntry, utcnow
from pokearena.core.errors import (
    BattleClosedError,
    ConcurrentUpdateError,
    NotFoundError,
    PersistenceError,
)
from pokearena.core.matchmaking import QueueEntry, QueueEntryStatus
from pokearena.core.ranking import UserStats
from pokearena.utils.logging import get_logger

logger = get_logger(__name__)

ACTIVE = BattleStatus.ACTIVE.value
WAITING = QueueEntryStatus.WAITING.value
MATCHED = QueueEntryStatus.MATCHED.value


# ---------------------------------------------------------------------------
# Database connection
# ---------------------------------------------------------------------------

def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    """Create all tables."""
    SQLModel.metadata.create_all(engine)


def _aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; every timestamp we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _SQLStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.exception("database_error", store=type(self).__name__)
            raise PersistenceError("Database operation failed") from exc


# ---------------------------------------------------------------------------
# Battles
# ---------------------------------------------------------------------------

class BattleRow(SQLModel, table=True):
    """One battle. ``state_json`` holds the full :class:`Battle` document."""

    __tablename__ = "battles"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    battle_id: str = Field(index=True, unique=True)  # UUID
    mode: str
    status: str = Field(default=ACTIVE, index=True)

    player1_user_id: str = Field(index=True)
    player2_user_id: str = Field(index=True)
    winner_user_id: str | None = None

    turn_number: int = 0
    version: int = 0

    state_json: dict = Field(default_factory=dict, sa_column=Column(JSON))

    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, index=True)
    finished_at: datetime | None = None


class BattleTurnRow(SQLModel, table=True):
    """Append-only log of half-moves."""

    __tablename__ = "battle_turns"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    battle_id: str = Field(index=True)
    turn_number: int
    side: str
    user_id: str
    move_id: int
    move_name: str
    damage: int
    effectiveness: float
    attacker_hp_before: int
    attacker_hp_after: int
    defender_hp_before: int
    defender_hp_after: int
    created_at: datetime = Field(default_factory=utcnow)


def _battle_from_row(row: BattleRow) -> Battle:
    battle = Battle.model_validate(row.state_json)
    battle.version = row.version
    return battle


class SQLBattleStore(_SQLStore):
    backend = "sql"

    def create(self, battle: Battle) -> str:
        with self._session() as session:
            session.add(
                BattleRow(
                    battle_id=battle.battle_id,
                    mode=battle.mode.value,
                    status=battle.status.value,
                    player1_user_id=battle.player1.user_id,
                    player2_user_id=battle.player2.user_id,
                    turn_number=battle.turn_number,
                    version=battle.version,
                    state_json=battle.model_dump(mode="json"),
                    started_at=battle.started_at,
                    updated_at=battle.updated_at,
                )
            )
            session.commit()
        return battle.battle_id

    def load(self, battle_id: str) -> Battle | None:
        with self._session() as session:
            row = session.exec(select(BattleRow).where(BattleRow.battle_id == battle_id)).first()
            return _battle_from_row(row) if row else None

    def _write(self, battle: Battle, expected_version: int) -> Battle:
        stored = battle.model_copy(deep=True)
        stored.version = expected_version + 1
        stored.updated_at = utcnow()

        with self._session() as session:
            result = session.exec(
                update(BattleRow)
                .where(
                    BattleRow.battle_id == battle.battle_id,
                    BattleRow.status == ACTIVE,
                    BattleRow.version == expected_version,
                )
                .values(
                    status=stored.status.value,
                    winner_user_id=stored.winner_user_id,
                    turn_number=stored.turn_number,
                    version=stored.version,
                    state_json=stored.model_dump(mode="json"),
                    updated_at=stored.updated_at,
                    finished_at=stored.finished_at,
                )
            )
            if result.rowcount != 1:
                session.rollback()
                row = session.exec(
                    select(BattleRow).where(BattleRow.battle_id == battle.battle_id)
                ).first()
                if row is None:
                    raise NotFoundError(f"Battle {battle.battle_id} not found")
                if row.status != ACTIVE:
                    raise BattleClosedError("Battle is already finished")
                raise ConcurrentUpdateError("Battle was updated by another request")
            session.commit()
        return stored

    def save(self, battle: Battle, expected_version: int) -> Battle:
        return self._write(battle, expected_version)

    def finalize(self, battle: Battle, expected_version: int) -> Battle:
        if battle.finished_at is None:
            battle.finished_at = utcnow()
        return self._write(battle, expected_version)

    def find_active(self, user_id: str) -> list[Battle]:
        with self._session() as session:
            rows = session.exec(
                select(BattleRow).where(
                    BattleRow.status == ACTIVE,
                    or_(BattleRow.player1_user_id == user_id, BattleRow.player2_user_id == user_id),
                )
            ).all()
            return [_battle_from_row(r) for r in rows]

    def list_battles(
        self,
        user_id: str | None = None,
        status: BattleStatus | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[Battle], int]:
        conditions = []
        if user_id is not None:
            conditions.append(
                or_(BattleRow.player1_user_id == user_id, BattleRow.player2_user_id == user_id)
            )
        if status is not None:
            conditions.append(BattleRow.status == status.value)

        with self._session() as session:
            total = session.exec(select(func.count()).select_from(BattleRow).where(*conditions)).one()
            rows = session.exec(
                select(BattleRow)
                .where(*conditions)
                .order_by(BattleRow.started_at.desc())  # type: ignore[attr-defined]
                .offset(offset)
                .limit(limit)
            ).all()
            return [_battle_from_row(r) for r in rows], total

    def list_stale(self, before: datetime) -> list[Battle]:
        with self._session() as session:
            rows = session.exec(
                select(BattleRow).where(BattleRow.status == ACTIVE, BattleRow.updated_at < before)
            ).all()
            return [_battle_from_row(r) for r in rows]

    def append_turns(self, entries: list[TurnLogEntry]) -> None:
        with self._session() as session:
            for entry in entries:
                session.add(BattleTurnRow(**entry.model_dump(mode="python")))
            session.commit()

    def list_turns(self, battle_id: str) -> list[TurnLogEntry]:
        with self._session() as session:
            rows = session.exec(
                select(BattleTurnRow)
                .where(BattleTurnRow.battle_id == battle_id)
                .order_by(BattleTurnRow.turn_number)
            ).all()
            return [
                TurnLogEntry(
                    battle_id=r.battle_id,
                    turn_number=r.turn_number,
                    side=Side(r.side),
                    user_id=r.user_id,
                    move_id=r.move_id,
                    move_name=r.move_name,
                    damage=r.damage,
                    effectiveness=r.effectiveness,
                    attacker_hp_before=r.attacker_hp_before,
                    attacker_hp_after=r.attacker_hp_after,
                    defender_hp_before=r.defender_hp_before,
                    defender_hp_after=r.defender_hp_after,
                    created_at=_aware(r.created_at),
                )
                for r in rows
            ]


# ---------------------------------------------------------------------------
# Matchmaking queue
# ---------------------------------------------------------------------------

class QueueRow(SQLModel, table=True):
    """One user's place in the matchmaking queue (at most one per user)."""

    __tablename__ = "matchmaking_queue"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    entry_id: str = Field(index=True, unique=True)
    user_id: str = Field(index=True, unique=True)
    display_name: str
    species_id: int
    species_name: str
    combatant_json: dict = Field(default_factory=dict, sa_column=Column(JSON))
    status: str = Field(default=WAITING, index=True)
    battle_id: str | None = None
    matched_with_user_id: str | None = None
    joined_at: datetime = Field(default_factory=utcnow, index=True)


def _entry_from_row(row: QueueRow) -> QueueEntry:
    return QueueEntry(
        entry_id=row.entry_id,
        user_id=row.user_id,
        display_name=row.display_name,
        species_id=row.species_id,
        species_name=row.species_name,
        combatant=row.combatant_json,
        status=QueueEntryStatus(row.status),
        battle_id=row.battle_id,
        matched_with_user_id=row.matched_with_user_id,
        joined_at=_aware(row.joined_at),
    )


class SQLQueueStore(_SQLStore):
    def get(self, user_id: str) -> QueueEntry | None:
        with self._session() as session:
            row = session.exec(select(QueueRow).where(QueueRow.user_id == user_id)).first()
            return _entry_from_row(row) if row else None

    def list_waiting(self, exclude_user_id: str, limit: int = 5) -> list[QueueEntry]:
        with self._session() as session:
            rows = session.exec(
                select(QueueRow)
                .where(QueueRow.status == WAITING, QueueRow.user_id != exclude_user_id)
                .order_by(QueueRow.joined_at)
                .limit(limit)
            ).all()
            return [_entry_from_row(r) for r in rows]

    def insert(self, entry: QueueEntry) -> QueueEntry:
        row = QueueRow(
            entry_id=entry.entry_id,
            user_id=entry.user_id,
            display_name=entry.display_name,
            species_id=entry.species_id,
            species_name=entry.species_name,
            combatant_json=entry.combatant.model_dump(mode="json"),
            status=entry.status.value,
            battle_id=entry.battle_id,
            matched_with_user_id=entry.matched_with_user_id,
            joined_at=entry.joined_at,
        )
        with self._session() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # The user already has an entry
                session.rollback()
                existing = session.exec(
                    select(QueueRow).where(QueueRow.user_id == entry.user_id)
                ).first()
                if existing is None:
                    raise
                return _entry_from_row(existing)
        return entry

    def claim(self, entry_id: str, matched_with_user_id: str) -> bool:
        with self._session() as session:
            result = session.exec(
                update(QueueRow)
                .where(QueueRow.entry_id == entry_id, QueueRow.status == WAITING)
                .values(status=MATCHED, matched_with_user_id=matched_with_user_id)
            )
            session.commit()
            return result.rowcount == 1

    def attach_battle(self, entry_id: str, battle_id: str) -> None:
        with self._session() as session:
            session.exec(
                update(QueueRow).where(QueueRow.entry_id == entry_id).values(battle_id=battle_id)
            )
            session.commit()

    def release(self, entry_id: str) -> None:
        with self._session() as session:
            session.exec(
                update(QueueRow)
                .where(
                    QueueRow.entry_id == entry_id,
                    QueueRow.status == MATCHED,
                    QueueRow.battle_id.is_(None),  # type: ignore[union-attr]
                )
                .values(status=WAITING, matched_with_user_id=None)
            )
            session.commit()

    def delete(self, user_id: str) -> bool:
        with self._session() as session:
            result = session.exec(delete(QueueRow).where(QueueRow.user_id == user_id))
            session.commit()
            return result.rowcount > 0


# ---------------------------------------------------------------------------
# User stats
# ---------------------------------------------------------------------------

class UserStatsRow(SQLModel, table=True):
    """Cumulative per-user record; the ranking is a query over this table."""

    __tablename__ = "user_battle_stats"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, unique=True)
    display_name: str = "Player"

    total_battles: int = 0
    wins: int = 0
    losses: int = 0
    draws: int = 0
    current_win_streak: int = 0
    best_win_streak: int = 0

    rating: int = Field(default=1000, index=True)
    peak_rating: int = 1000

    species_usage: dict = Field(default_factory=dict, sa_column=Column(JSON))
    species_names: dict = Field(default_factory=dict, sa_column=Column(JSON))

    first_battle_at: datetime | None = None
    last_battle_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)


_STATS_FIELDS = (
    "display_name",
    "total_battles",
    "wins",
    "losses",
    "draws",
    "current_win_streak",
    "best_win_streak",
    "rating",
    "peak_rating",
    "species_usage",
    "species_names",
    "first_battle_at",
    "last_battle_at",
    "updated_at",
)


def _stats_from_row(row: UserStatsRow) -> UserStats:
    return UserStats(
        user_id=row.user_id,
        display_name=row.display_name,
        total_battles=row.total_battles,
        wins=row.wins,
        losses=row.losses,
        draws=row.draws,
        current_win_streak=row.current_win_streak,
        best_win_streak=row.best_win_streak,
        rating=row.rating,
        peak_rating=row.peak_rating,
        species_usage=dict(row.species_usage or {}),
        species_names=dict(row.species_names or {}),
        first_battle_at=_aware(row.first_battle_at),
        last_battle_at=_aware(row.last_battle_at),
        updated_at=_aware(row.updated_at),
    )


class SQLStatsStore(_SQLStore):
    def get(self, user_id: str) -> UserStats | None:
        with self._session() as session:
            row = session.exec(select(UserStatsRow).where(UserStatsRow.user_id == user_id)).first()
            return _stats_from_row(row) if row else None

    def update(
        self,
        user_id: str,
        display_name: str,
        mutate: Callable[[UserStats], None],
        default_rating: int,
    ) -> UserStats:
        with self._session() as session:
            try:
                return self._apply_update(session, user_id, display_name, mutate, default_rating)
            except IntegrityError:
                # Another request inserted this user's first row; update that one
                session.rollback()
                logger.info("stats_row_created_concurrently", user_id=user_id)
                return self._apply_update(session, user_id, display_name, mutate, default_rating)

    def _apply_update(
        self,
        session: Session,
        user_id: str,
        display_name: str,
        mutate: Callable[[UserStats], None],
        default_rating: int,
    ) -> UserStats:
        row = session.exec(
            select(UserStatsRow).where(UserStatsRow.user_id == user_id).with_for_update()
        ).first()
        if row is None:
            row = UserStatsRow(
                user_id=user_id,
                display_name=display_name,
                rating=default_rating,
                peak_rating=default_rating,
            )
        stats = _stats_from_row(row)
        stats.display_name = display_name or stats.display_name
        mutate(stats)
        stats.updated_at = utcnow()

        for name in _STATS_FIELDS:
            setattr(row, name, getattr(stats, name))
        # JSON columns are not mutation-tracked; assign fresh dicts
        row.species_usage = dict(stats.species_usage)
        row.species_names = dict(stats.species_names)
        session.add(row)
        session.commit()
        return stats

    def count_rated_above(self, rating: int) -> int:
        with self._session() as session:
            return session.exec(
                select(func.count())
                .select_from(UserStatsRow)
                .where(UserStatsRow.total_battles > 0, UserStatsRow.rating > rating)
            ).one()

    def list_ranked(self, limit: int = 10, offset: int = 0) -> list[UserStats]:
        with self._session() as session:
            rows = session.exec(
                select(UserStatsRow)
                .where(UserStatsRow.total_battles > 0)
                .order_by(UserStatsRow.rating.desc(), UserStatsRow.user_id)  # type: ignore[attr-defined]
                .offset(offset)
                .limit(limit)
            ).all()
            return [_stats_from_row(r) for r in rows]

    def count_ranked(self) -> int:
        with self._session() as session:
            return session.exec(
                select(func.count()).select_from(UserStatsRow).where(UserStatsRow.total_battles > 0)
            ).one()
