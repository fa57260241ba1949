"""Per-user battle statistics and ELO rating updates.

Called once per finished battle by the turn resolver. Counters (wins,
losses, streaks, species usage) are updated for every human participant;
ratings move only for rated battles: human vs human, plus human vs AI when
``rate_ai_battles`` is enabled (the AI then plays at a fixed nominal rating).
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from pokearena.core.battle import Battle, BattleMode, BattleStatus, Side, utcnow
from pokearena.utils.config import Settings, settings as default_settings
from pokearena.utils.logging import get_logger

if TYPE_CHECKING:
    from pokearena.data.store import StatsStore

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# ELO rating helpers
# ---------------------------------------------------------------------------

DEFAULT_RATING = 1000
K_FACTOR = 32

SCORE_WIN = 1.0
SCORE_DRAW = 0.5
SCORE_LOSS = 0.0


def expected_score(rating: int, opponent_rating: int) -> float:
    """Logistic expected score of ``rating`` against ``opponent_rating``."""
    return 1.0 / (1.0 + 10 ** ((opponent_rating - rating) / 400))


def rating_change(rating: int, opponent_rating: int, score: float, k_factor: int = K_FACTOR) -> int:
    """``round(K * (score - expected))``."""
    return round(k_factor * (score - expected_score(rating, opponent_rating)))


def calculate_elo_change(winner_elo: int, loser_elo: int, k_factor: int = K_FACTOR) -> tuple[int, int]:
    """Return (winner_delta, loser_delta) for a decided battle."""
    return (
        rating_change(winner_elo, loser_elo, SCORE_WIN, k_factor),
        rating_change(loser_elo, winner_elo, SCORE_LOSS, k_factor),
    )


def compute_rank(rating: int) -> str:
    """Derive a rank label from a rating."""
    if rating < 1100:
        return "Youngster"
    if rating < 1300:
        return "Bug Catcher"
    if rating < 1500:
        return "Ace Trainer"
    if rating < 1700:
        return "Gym Leader"
    if rating < 1900:
        return "Elite Four"
    if rating < 2100:
        return "Champion"
    return "Pokemon Master"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class UserStats(BaseModel):
    """Cumulative record of one user. ``wins + losses + draws == total_battles``."""

    user_id: str
    display_name: str = "Player"

    total_battles: int = 0
    wins: int = 0
    losses: int = 0
    draws: int = 0
    current_win_streak: int = 0
    best_win_streak: int = 0

    rating: int = DEFAULT_RATING
    peak_rating: int = DEFAULT_RATING

    # species_id (as str, JSON-friendly) -> times used
    species_usage: dict[str, int] = Field(default_factory=dict)
    species_names: dict[str, str] = Field(default_factory=dict)

    first_battle_at: datetime | None = None
    last_battle_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def win_rate(self) -> float:
        """Percentage of battles won, one decimal."""
        if self.total_battles == 0:
            return 0.0
        return round(self.wins / self.total_battles * 100, 1)

    @property
    def most_used_species(self) -> tuple[int, str, int] | None:
        """(species_id, name, count) of the most used species, ties to the lowest id."""
        if not self.species_usage:
            return None
        species_key = min(self.species_usage, key=lambda k: (-self.species_usage[k], int(k)))
        return int(species_key), self.species_names.get(species_key, ""), self.species_usage[species_key]

    def record_result(self, score: float, species_id: int, species_name: str, at: datetime) -> None:
        self.total_battles += 1
        if score == SCORE_WIN:
            self.wins += 1
            self.current_win_streak += 1
        elif score == SCORE_LOSS:
            self.losses += 1
            self.current_win_streak = 0
        else:
            self.draws += 1
            self.current_win_streak = 0
        self.best_win_streak = max(self.best_win_streak, self.current_win_streak)

        key = str(species_id)
        self.species_usage[key] = self.species_usage.get(key, 0) + 1
        self.species_names[key] = species_name

        if self.first_battle_at is None:
            self.first_battle_at = at
        self.last_battle_at = at

    def apply_rating_change(self, delta: int) -> None:
        self.rating = max(0, self.rating + delta)
        self.peak_rating = max(self.peak_rating, self.rating)


class MostUsedSpecies(BaseModel):
    id: int
    name: str
    count: int


class RankingEntry(BaseModel):
    """Read-only ranking row (not a table)."""

    position: int
    user_id: str
    display_name: str
    rating: int
    peak_rating: int
    rank: str
    total_battles: int
    wins: int
    losses: int
    draws: int
    win_rate: float
    best_win_streak: int


class StatsSummary(BaseModel):
    user_id: str
    display_name: str
    total_battles: int
    wins: int
    losses: int
    draws: int
    win_rate: float
    current_win_streak: int
    best_win_streak: int
    rating: int
    peak_rating: int
    rank: str
    position: int
    most_used_pokemon: MostUsedSpecies | None = None
    first_battle_at: datetime | None = None
    last_battle_at: datetime | None = None


class RankingPage(BaseModel):
    ranking: list[RankingEntry]
    total: int
    limit: int
    offset: int
    has_more: bool


def _ranking_entry(stats: UserStats, position: int) -> RankingEntry:
    return RankingEntry(
        position=position,
        user_id=stats.user_id,
        display_name=stats.display_name,
        rating=stats.rating,
        peak_rating=stats.peak_rating,
        rank=compute_rank(stats.rating),
        total_battles=stats.total_battles,
        wins=stats.wins,
        losses=stats.losses,
        draws=stats.draws,
        win_rate=stats.win_rate,
        best_win_streak=stats.best_win_streak,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

_SCORES: dict[BattleStatus, dict[Side, float]] = {
    BattleStatus.PLAYER1_WON: {Side.PLAYER1: SCORE_WIN, Side.PLAYER2: SCORE_LOSS},
    BattleStatus.PLAYER2_WON: {Side.PLAYER1: SCORE_LOSS, Side.PLAYER2: SCORE_WIN},
    BattleStatus.DRAW: {Side.PLAYER1: SCORE_DRAW, Side.PLAYER2: SCORE_DRAW},
}


class RankingService:
    """Applies finished battles to user stats and serves the ranking."""

    def __init__(self, stats: StatsStore, config: Settings | None = None) -> None:
        self.stats = stats
        self.config = config or default_settings

    def _is_ai(self, user_id: str) -> bool:
        return user_id == self.config.ai_user_id

    def _is_rated(self, battle: Battle) -> bool:
        if battle.mode is BattleMode.PVP:
            return True
        return self.config.rate_ai_battles

    def _current_rating(self, user_id: str) -> int:
        if self._is_ai(user_id):
            return self.config.ai_rating
        existing = self.stats.get(user_id)
        return existing.rating if existing else self.config.default_rating

    def record_battle(self, battle: Battle) -> dict[str, int]:
        """Update counters and ratings for a finished battle.

        Returns the rating change per human user id (0 for unrated battles).
        Abandoned and still-active battles are ignored.
        """
        scores = _SCORES.get(battle.status)
        if scores is None:
            return {}

        rated = self._is_rated(battle)
        ratings = {side: self._current_rating(battle.participant(side).user_id) for side in Side}
        finished_at = battle.finished_at or utcnow()

        deltas: dict[str, int] = {}
        for side in Side:
            participant = battle.participant(side)
            if self._is_ai(participant.user_id):
                continue

            score = scores[side]
            delta = 0
            if rated:
                delta = rating_change(
                    ratings[side], ratings[side.other], score, self.config.elo_k_factor
                )

            def mutate(stats: UserStats, score=score, delta=delta, participant=participant) -> None:
                combatant = participant.combatant
                stats.record_result(score, combatant.species_id, combatant.species_name, finished_at)
                if delta:
                    stats.apply_rating_change(delta)

            updated = self.stats.update(
                participant.user_id,
                participant.display_name,
                mutate,
                self.config.default_rating,
            )
            deltas[participant.user_id] = delta
            logger.info(
                "stats_updated",
                battle_id=battle.battle_id,
                user_id=participant.user_id,
                score=score,
                rating=updated.rating,
                rating_change=delta,
            )
        return deltas

    def get_position(self, stats: UserStats) -> int:
        return self.stats.count_rated_above(stats.rating) + 1

    def get_stats(self, user_id: str) -> StatsSummary | None:
        stats = self.stats.get(user_id)
        if stats is None:
            return None
        return self.summarize(stats)

    def empty_stats(self, user_id: str, display_name: str) -> StatsSummary:
        """Summary for a user who has not finished a battle yet."""
        return self.summarize(
            UserStats(
                user_id=user_id,
                display_name=display_name,
                rating=self.config.default_rating,
                peak_rating=self.config.default_rating,
            )
        )

    def summarize(self, stats: UserStats) -> StatsSummary:
        most_used = stats.most_used_species
        return StatsSummary(
            user_id=stats.user_id,
            display_name=stats.display_name,
            total_battles=stats.total_battles,
            wins=stats.wins,
            losses=stats.losses,
            draws=stats.draws,
            win_rate=stats.win_rate,
            current_win_streak=stats.current_win_streak,
            best_win_streak=stats.best_win_streak,
            rating=stats.rating,
            peak_rating=stats.peak_rating,
            rank=compute_rank(stats.rating),
            position=self.get_position(stats),
            most_used_pokemon=(
                MostUsedSpecies(id=most_used[0], name=most_used[1], count=most_used[2])
                if most_used
                else None
            ),
            first_battle_at=stats.first_battle_at,
            last_battle_at=stats.last_battle_at,
        )

    def get_ranking_entry(self, user_id: str) -> RankingEntry | None:
        stats = self.stats.get(user_id)
        if stats is None:
            return None
        return _ranking_entry(stats, self.get_position(stats))

    def get_ranking(self, limit: int = 10, offset: int = 0) -> RankingPage:
        total = self.stats.count_ranked()
        rows = self.stats.list_ranked(limit=limit, offset=offset)
        entries = [_ranking_entry(s, i) for i, s in enumerate(rows, start=offset + 1)]
        return RankingPage(
            ranking=entries,
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + limit < total,
        )
