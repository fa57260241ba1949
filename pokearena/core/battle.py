"""Battle state models and combatant stat derivation.

A :class:`Battle` is the authoritative record of one match. It is persisted
between requests by a battle store and only ever mutated by the turn
resolver in :mod:`pokearena.core.engine`. Clients never send state, only
intent (battle id + move id).
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from pokearena.core.moves import Move, fallback_moves, select_moves


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class BattleMode(str, Enum):
    AI = "ai"  # Human vs server-controlled opponent
    PVP = "pvp"  # Two humans paired by matchmaking


class BattleStatus(str, Enum):
    """Lifecycle status of a battle. Everything but ACTIVE is terminal."""

    ACTIVE = "active"
    PLAYER1_WON = "player1_won"
    PLAYER2_WON = "player2_won"
    DRAW = "draw"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self is not BattleStatus.ACTIVE


class Side(str, Enum):
    PLAYER1 = "player1"
    PLAYER2 = "player2"

    @property
    def other(self) -> Side:
        return Side.PLAYER2 if self is Side.PLAYER1 else Side.PLAYER1

    @property
    def won_status(self) -> BattleStatus:
        return BattleStatus.PLAYER1_WON if self is Side.PLAYER1 else BattleStatus.PLAYER2_WON


# ---------------------------------------------------------------------------
# Combatants
# ---------------------------------------------------------------------------

class Combatant(BaseModel):
    """One side's creature with stats frozen at battle start."""

    species_id: int
    species_name: str
    types: list[str] = Field(default_factory=lambda: ["normal"])

    max_hp: int = Field(ge=1)
    current_hp: int = Field(ge=0)
    attack: int = 50
    defense: int = 50
    speed: int = 50

    moves: list[Move] = Field(min_length=1, max_length=4)

    sprite_front: str | None = None
    sprite_back: str | None = None

    @property
    def display_name(self) -> str:
        return self.species_name.replace("-", " ").capitalize()

    @property
    def is_fainted(self) -> bool:
        return self.current_hp <= 0

    def get_move(self, move_id: int) -> Move | None:
        for move in self.moves:
            if move.id == move_id:
                return move
        return None

    def take_damage(self, amount: int) -> int:
        """Apply damage, return actual amount dealt. Clamps to 0."""
        actual = max(0, min(amount, self.current_hp))
        self.current_hp -= actual
        return actual


class Participant(BaseModel):
    """A user (or the AI) on one side of a battle."""

    user_id: str
    display_name: str
    combatant: Combatant


# ---------------------------------------------------------------------------
# Turn records
# ---------------------------------------------------------------------------

class HalfMove(BaseModel):
    """One attack application: the unit the turn counter counts."""

    turn_number: int
    side: Side
    move_id: int
    move_name: str
    move_type: str
    damage: int
    effectiveness: float
    target_hp_after: int


class TurnLogEntry(BaseModel):
    """Audit/history record of one half-move."""

    battle_id: str
    turn_number: int
    side: Side
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


# ---------------------------------------------------------------------------
# Main battle state
# ---------------------------------------------------------------------------

class Battle(BaseModel):
    """The complete, server-authoritative state of a battle.

    Persisted as a whole between turns; ``version`` increases with every
    successful write so concurrent requests can be detected.
    """

    battle_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    mode: BattleMode
    status: BattleStatus = BattleStatus.ACTIVE

    player1: Participant
    player2: Participant

    current_turn: Side | None = Side.PLAYER1
    turn_number: int = 0
    messages: list[str] = Field(default_factory=list)
    last_action: dict[str, Any] | None = None

    winner_user_id: str | None = None
    version: int = 0

    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None

    def participant(self, side: Side) -> Participant:
        return self.player1 if side is Side.PLAYER1 else self.player2

    def side_of(self, user_id: str) -> Side | None:
        """Which side ``user_id`` plays, or None for outsiders."""
        if self.player1.user_id == user_id:
            return Side.PLAYER1
        if self.player2.user_id == user_id:
            return Side.PLAYER2
        return None

    @property
    def is_active(self) -> bool:
        return self.status is BattleStatus.ACTIVE

    @property
    def duration_seconds(self) -> int | None:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds())


# ---------------------------------------------------------------------------
# Client-facing views
# ---------------------------------------------------------------------------

class CombatantView(BaseModel):
    """What a client may see of a combatant.

    Exact attack/defense/speed stay on the server; the opponent's move list
    is hidden as well.
    """

    species_id: int
    species_name: str
    types: list[str]
    current_hp: int
    max_hp: int
    moves: list[Move] | None = None
    sprite_front: str | None = None
    sprite_back: str | None = None


class SideView(BaseModel):
    user_id: str
    display_name: str
    pokemon: CombatantView


class BattleView(BaseModel):
    battle_id: str
    mode: BattleMode
    status: BattleStatus
    your_side: Side | None = None
    current_turn: Side | None
    turn_number: int
    player1: SideView
    player2: SideView
    messages: list[str]
    last_action: dict[str, Any] | None = None
    winner_user_id: str | None = None
    started_at: datetime
    finished_at: datetime | None = None


def _combatant_view(combatant: Combatant, show_moves: bool) -> CombatantView:
    return CombatantView(
        species_id=combatant.species_id,
        species_name=combatant.species_name,
        types=list(combatant.types),
        current_hp=combatant.current_hp,
        max_hp=combatant.max_hp,
        moves=list(combatant.moves) if show_moves else None,
        sprite_front=combatant.sprite_front,
        sprite_back=combatant.sprite_back,
    )


def battle_view(battle: Battle, viewer_id: str | None = None) -> BattleView:
    """Build the client-safe view of a battle for ``viewer_id``.

    Only the viewer's own combatant includes its move list.
    """
    viewer_side = battle.side_of(viewer_id) if viewer_id else None

    def side_view(side: Side) -> SideView:
        p = battle.participant(side)
        return SideView(
            user_id=p.user_id,
            display_name=p.display_name,
            pokemon=_combatant_view(p.combatant, show_moves=side is viewer_side),
        )

    return BattleView(
        battle_id=battle.battle_id,
        mode=battle.mode,
        status=battle.status,
        your_side=viewer_side,
        current_turn=battle.current_turn,
        turn_number=battle.turn_number,
        player1=side_view(Side.PLAYER1),
        player2=side_view(Side.PLAYER2),
        messages=list(battle.messages),
        last_action=battle.last_action,
        winner_user_id=battle.winner_user_id,
        started_at=battle.started_at,
        finished_at=battle.finished_at,
    )


class SummarySide(BaseModel):
    user_id: str
    display_name: str
    species_id: int
    species_name: str


class BattleSummary(BaseModel):
    """One row of a battle history listing."""

    battle_id: str
    mode: BattleMode
    status: BattleStatus
    player1: SummarySide
    player2: SummarySide
    winner_user_id: str | None = None
    turn_number: int
    started_at: datetime
    finished_at: datetime | None = None
    duration_seconds: int | None = None


def battle_summary(battle: Battle) -> BattleSummary:
    def side(p: Participant) -> SummarySide:
        return SummarySide(
            user_id=p.user_id,
            display_name=p.display_name,
            species_id=p.combatant.species_id,
            species_name=p.combatant.species_name,
        )

    return BattleSummary(
        battle_id=battle.battle_id,
        mode=battle.mode,
        status=battle.status,
        player1=side(battle.player1),
        player2=side(battle.player2),
        winner_user_id=battle.winner_user_id,
        turn_number=battle.turn_number,
        started_at=battle.started_at,
        finished_at=battle.finished_at,
        duration_seconds=battle.duration_seconds,
    )


# ---------------------------------------------------------------------------
# Stat derivation
# ---------------------------------------------------------------------------

BATTLE_LEVEL = 50
DEFAULT_BASE_STAT = 50


def calculate_max_hp(base_hp: int, level: int = BATTLE_LEVEL) -> int:
    """Flattened HP curve: ``floor(base_hp * level / 50) + 50``.

    Keeps mid- and high-tier species inside a playable HP band.
    """
    return math.floor(base_hp * (level / 50)) + 50


def get_base_stat(species: dict[str, Any], stat_name: str) -> int:
    """Base stat from a PokeAPI species record; 50 when missing."""
    for entry in species.get("stats") or []:
        if (entry.get("stat") or {}).get("name") == stat_name:
            return entry.get("base_stat") or DEFAULT_BASE_STAT
    return DEFAULT_BASE_STAT


def get_types(species: dict[str, Any]) -> list[str]:
    """Type names in slot order; ``["normal"]`` when missing."""
    slots = sorted(species.get("types") or [], key=lambda t: t.get("slot", 0))
    types = [t["type"]["name"] for t in slots if (t.get("type") or {}).get("name")]
    return types or ["normal"]


def derive_combatant(
    species: dict[str, Any],
    move_details: list[dict[str, Any] | None] | None = None,
    level: int = BATTLE_LEVEL,
) -> Combatant:
    """Create a Combatant from a raw species record.

    ``move_details`` are the looked-up moves for the species (see
    :func:`pokearena.core.moves.candidate_move_names`); when omitted the
    synthetic fallback moveset is used.
    """
    types = get_types(species)
    primary_type = types[0]
    max_hp = calculate_max_hp(get_base_stat(species, "hp"), level)

    if move_details is None:
        moves = fallback_moves(primary_type)
    else:
        moves = select_moves(primary_type, move_details)

    sprites = species.get("sprites") or {}
    return Combatant(
        species_id=species.get("id") or 0,
        species_name=species.get("name") or "unknown",
        types=types,
        max_hp=max_hp,
        current_hp=max_hp,
        attack=get_base_stat(species, "attack"),
        defense=get_base_stat(species, "defense"),
        speed=get_base_stat(species, "speed"),
        moves=moves,
        sprite_front=sprites.get("front_default"),
        sprite_back=sprites.get("back_default"),
    )
