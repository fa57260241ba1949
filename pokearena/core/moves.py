"""Move model, type effectiveness chart, damage calculation and move selection."""

import math
import random
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class PokemonType(str, Enum):
    """All 18 Pokemon types."""

    NORMAL = "normal"
    FIRE = "fire"
    WATER = "water"
    ELECTRIC = "electric"
    GRASS = "grass"
    ICE = "ice"
    FIGHTING = "fighting"
    POISON = "poison"
    GROUND = "ground"
    FLYING = "flying"
    PSYCHIC = "psychic"
    BUG = "bug"
    ROCK = "rock"
    GHOST = "ghost"
    DRAGON = "dragon"
    DARK = "dark"
    STEEL = "steel"
    FAIRY = "fairy"


class DamageClass(str, Enum):
    """Move damage classification (as reported by PokeAPI)."""

    PHYSICAL = "physical"
    SPECIAL = "special"
    STATUS = "status"


# ---------------------------------------------------------------------------
# Type effectiveness chart
# ---------------------------------------------------------------------------
# For every attacking type: the defending types it hits for 2x, 0.5x and 0x.
# Anything not listed is neutral (1x).
# ---------------------------------------------------------------------------

# fmt: off
_MATCHUPS: dict[str, tuple[tuple[str, ...], tuple[str, ...], tuple[str, ...]]] = {
    #             super effective                                   not very effective                                          immune
    "normal":   ((),                                                ("rock", "steel"),                                           ("ghost",)),
    "fire":     (("grass", "ice", "bug", "steel"),                  ("fire", "water", "rock", "dragon"),                         ()),
    "water":    (("fire", "ground", "rock"),                        ("water", "grass", "dragon"),                                ()),
    "electric": (("water", "flying"),                               ("electric", "grass", "dragon"),                             ("ground",)),
    "grass":    (("water", "ground", "rock"),                       ("fire", "grass", "poison", "flying", "bug", "dragon", "steel"), ()),
    "ice":      (("grass", "ground", "flying", "dragon"),           ("fire", "water", "ice", "steel"),                           ()),
    "fighting": (("normal", "ice", "rock", "dark", "steel"),        ("poison", "flying", "psychic", "bug", "fairy"),             ("ghost",)),
    "poison":   (("grass", "fairy"),                                ("poison", "ground", "rock", "ghost"),                       ("steel",)),
    "ground":   (("fire", "electric", "poison", "rock", "steel"),   ("grass", "bug"),                                            ("flying",)),
    "flying":   (("grass", "fighting", "bug"),                      ("electric", "rock", "steel"),                               ()),
    "psychic":  (("fighting", "poison"),                            ("psychic", "steel"),                                        ("dark",)),
    "bug":      (("grass", "psychic", "dark"),                      ("fire", "fighting", "poison", "flying", "ghost", "steel", "fairy"), ()),
    "rock":     (("fire", "ice", "flying", "bug"),                  ("fighting", "ground", "steel"),                             ()),
    "ghost":    (("psychic", "ghost"),                              ("dark",),                                                   ("normal",)),
    "dragon":   (("dragon",),                                       ("steel",),                                                  ("fairy",)),
    "dark":     (("psychic", "ghost"),                              ("fighting", "dark", "fairy"),                               ()),
    "steel":    (("ice", "rock", "fairy"),                          ("fire", "water", "electric", "steel"),                      ()),
    "fairy":    (("fighting", "dragon", "dark"),                    ("fire", "poison", "steel"),                                 ()),
}
# fmt: on


def _build_chart() -> dict[str, dict[str, float]]:
    chart: dict[str, dict[str, float]] = {}
    for attacking, (double, half, immune) in _MATCHUPS.items():
        row = {t.value: 1.0 for t in PokemonType}
        row.update({d: 2.0 for d in double})
        row.update({d: 0.5 for d in half})
        row.update({d: 0.0 for d in immune})
        chart[attacking] = row
    return chart


# TYPE_CHART[attacking_type][defending_type] = multiplier
TYPE_CHART: dict[str, dict[str, float]] = _build_chart()


def get_type_effectiveness(move_type: str, defender_types: list[str]) -> float:
    """Combined multiplier of a move type against every defending type.

    Results can be 0x, 0.25x, 0.5x, 1x, 2x, or 4x. Unknown types are neutral.
    """
    row = TYPE_CHART.get((move_type or "normal").lower(), {})
    mult = 1.0
    for defending in defender_types:
        mult *= row.get(defending.lower(), 1.0)
    return mult


def effectiveness_message(effectiveness: float, target_name: str = "") -> str | None:
    """Return the battle-log line for an effectiveness multiplier, if any."""
    if effectiveness == 0:
        return f"It doesn't affect {target_name}..." if target_name else "It had no effect..."
    if effectiveness > 1:
        return "It's super effective!"
    if effectiveness < 1:
        return "It's not very effective..."
    return None


# ---------------------------------------------------------------------------
# Move model
# ---------------------------------------------------------------------------

class Move(BaseModel):
    """A selectable attack with fixed power and elemental type."""

    id: int = Field(ge=1)  # Unique within one combatant's move list
    name: str
    power: int = Field(ge=0)
    type: str = "normal"


class DamageResult(BaseModel):
    damage: int
    effectiveness: float


# ---------------------------------------------------------------------------
# Damage calculation
# ---------------------------------------------------------------------------

VARIATION_MIN = 0.8
VARIATION_MAX = 1.2


def calculate_damage(
    attack_stat: int,
    defense_stat: int,
    move_power: int,
    move_type: str,
    defender_types: list[str],
    rng: random.Random | None = None,
) -> DamageResult:
    """Calculate the damage dealt by one move.

    Formula:
        base = (attack / defense) * power * effectiveness
        damage = max(1, floor(base * random(0.8..1.2)))

    Immunity (effectiveness 0) always deals 0 damage; any other hit deals at
    least 1 so a battle always makes progress.
    """
    effectiveness = get_type_effectiveness(move_type, defender_types)
    if effectiveness == 0:
        return DamageResult(damage=0, effectiveness=0.0)

    rng = rng or random
    base = (attack_stat / max(1, defense_stat)) * move_power * effectiveness
    variation = rng.uniform(VARIATION_MIN, VARIATION_MAX)
    return DamageResult(
        damage=max(1, math.floor(base * variation)),
        effectiveness=effectiveness,
    )


# ---------------------------------------------------------------------------
# Move selection
# ---------------------------------------------------------------------------
# Species records from PokeAPI list every learnable move. We pick four
# damaging ones that span the power range; when that is impossible (too few
# damaging moves, or the move catalog is unreachable) a synthetic moveset
# of the species' primary type is used instead.
# ---------------------------------------------------------------------------

MAX_MOVES = 4
MIN_LEVEL_UP_CANDIDATES = 6
MAX_CANDIDATES = 12

FALLBACK_MOVES: list[tuple[str, int]] = [
    ("Quick Attack", 30),
    ("Normal Attack", 50),
    ("Strong Attack", 70),
    ("Special Attack", 90),
]


def fallback_moves(primary_type: str = "normal") -> list[Move]:
    """Four generic moves of the given type with power 30/50/70/90."""
    return [
        Move(id=i, name=name, power=power, type=primary_type or "normal")
        for i, (name, power) in enumerate(FALLBACK_MOVES, start=1)
    ]


def format_move_name(name: str) -> str:
    """``"thunder-punch"`` -> ``"Thunder Punch"``."""
    return name.replace("-", " ").title()


def candidate_move_names(species: dict[str, Any]) -> list[str]:
    """Names of the moves worth looking up for a species.

    Level-up moves are preferred when the species has enough of them;
    otherwise every learnable move is a candidate. Capped at 12 lookups.
    """
    all_moves = species.get("moves") or []
    level_up: list[str] = []
    named: list[str] = []
    for entry in all_moves:
        name = (entry.get("move") or {}).get("name")
        if not name:
            continue
        named.append(name)
        details = entry.get("version_group_details") or []
        if any((d.get("move_learn_method") or {}).get("name") == "level-up" for d in details):
            level_up.append(name)

    if len(level_up) >= MIN_LEVEL_UP_CANDIDATES:
        names = level_up
    else:
        names = named
    return names[:MAX_CANDIDATES]


def _is_damaging(detail: dict[str, Any] | None) -> bool:
    if not detail or not detail.get("power"):
        return False
    damage_class = (detail.get("damage_class") or {}).get("name")
    return damage_class != DamageClass.STATUS.value


def select_moves(primary_type: str, move_details: list[dict[str, Any] | None]) -> list[Move]:
    """Pick up to four damaging moves spanning the power distribution.

    ``move_details`` are PokeAPI move payloads (``None`` for lookups that
    failed). Picks the weakest, the ~1/3 and ~2/3 marks and the strongest.
    Falls back to :func:`fallback_moves` when fewer than four qualify.
    """
    damaging = sorted((d for d in move_details if _is_damaging(d)), key=lambda d: d["power"])
    if len(damaging) < MAX_MOVES:
        return fallback_moves(primary_type)

    n = len(damaging)
    indices: list[int] = []
    for i in (0, n // 3, (2 * n) // 3, n - 1):
        if i not in indices:
            indices.append(i)

    moves = []
    for move_id, idx in enumerate(indices[:MAX_MOVES], start=1):
        detail = damaging[idx]
        moves.append(
            Move(
                id=move_id,
                name=format_move_name(detail["name"]),
                power=int(detail["power"]),
                type=(detail.get("type") or {}).get("name") or primary_type,
            )
        )
    return moves
