"""Tests for battle models, client views and stat derivation."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from pokearena.core.battle import (
    Battle,
    BattleMode,
    BattleStatus,
    Side,
    battle_summary,
    battle_view,
    calculate_max_hp,
    derive_combatant,
    get_base_stat,
    get_types,
)
from pokearena.core.moves import fallback_moves
from tests.factories import make_combatant, make_move_detail, make_participant, make_species


def _make_battle(mode=BattleMode.PVP) -> Battle:
    return Battle(
        mode=mode,
        player1=make_participant("ash", "Ash"),
        player2=make_participant("gary", "Gary", species_id=4, name="charmander", types=["fire"]),
    )


class TestEnums:
    def test_terminal_statuses(self):
        assert not BattleStatus.ACTIVE.is_terminal
        for status in (
            BattleStatus.PLAYER1_WON,
            BattleStatus.PLAYER2_WON,
            BattleStatus.DRAW,
            BattleStatus.ABANDONED,
        ):
            assert status.is_terminal

    def test_side_helpers(self):
        assert Side.PLAYER1.other is Side.PLAYER2
        assert Side.PLAYER2.other is Side.PLAYER1
        assert Side.PLAYER1.won_status is BattleStatus.PLAYER1_WON
        assert Side.PLAYER2.won_status is BattleStatus.PLAYER2_WON


class TestCombatant:
    def test_take_damage_clamps_at_zero(self):
        mon = make_combatant(hp=30)
        assert mon.take_damage(50) == 30
        assert mon.current_hp == 0
        assert mon.is_fainted

    def test_take_damage_ignores_negative(self):
        mon = make_combatant(hp=30)
        assert mon.take_damage(-5) == 0
        assert mon.current_hp == 30

    def test_get_move(self):
        mon = make_combatant()
        assert mon.get_move(2).name == "Thunderbolt"
        assert mon.get_move(99) is None

    def test_display_name(self):
        assert make_combatant(name="mr-mime").display_name == "Mr mime"

    def test_move_list_bounds(self):
        with pytest.raises(ValidationError):
            make_combatant(moves=[])
        with pytest.raises(ValidationError):
            make_combatant(moves=fallback_moves() + fallback_moves()[:1])


class TestBattle:
    def test_defaults(self):
        battle = _make_battle()
        assert battle.status is BattleStatus.ACTIVE
        assert battle.current_turn is Side.PLAYER1
        assert battle.turn_number == 0
        assert battle.version == 0
        assert battle.is_active

    def test_side_of(self):
        battle = _make_battle()
        assert battle.side_of("ash") is Side.PLAYER1
        assert battle.side_of("gary") is Side.PLAYER2
        assert battle.side_of("brock") is None

    def test_duration(self):
        battle = _make_battle()
        assert battle.duration_seconds is None
        battle.finished_at = battle.started_at + timedelta(seconds=95)
        assert battle.duration_seconds == 95

    def test_json_roundtrip_keeps_state(self):
        battle = _make_battle()
        battle.player2.combatant.take_damage(12)
        restored = Battle.model_validate(battle.model_dump(mode="json"))
        assert restored == battle


class TestBattleView:
    def test_viewer_sees_own_moves_only(self):
        view = battle_view(_make_battle(), "ash")
        assert view.your_side is Side.PLAYER1
        assert view.player1.pokemon.moves is not None
        assert view.player2.pokemon.moves is None

    def test_stats_are_not_exposed(self):
        data = battle_view(_make_battle(), "gary").model_dump()
        assert data["your_side"] == Side.PLAYER2
        for side in ("player1", "player2"):
            assert "attack" not in data[side]["pokemon"]
            assert "defense" not in data[side]["pokemon"]
        assert data["player2"]["pokemon"]["moves"] is not None

    def test_outsider_sees_no_moves(self):
        view = battle_view(_make_battle(), "brock")
        assert view.your_side is None
        assert view.player1.pokemon.moves is None
        assert view.player2.pokemon.moves is None

    def test_summary(self):
        summary = battle_summary(_make_battle())
        assert summary.player1.species_name == "pikachu"
        assert summary.player2.species_name == "charmander"
        assert summary.status is BattleStatus.ACTIVE


class TestStatDerivation:
    def test_max_hp(self):
        assert calculate_max_hp(100) == 150
        assert calculate_max_hp(0) == 50
        assert calculate_max_hp(45) == 95

    def test_max_hp_monotone(self):
        values = [calculate_max_hp(b) for b in range(0, 256)]
        assert values == sorted(values)

    def test_max_hp_level_scaling(self):
        assert calculate_max_hp(100, level=100) == 250

    def test_base_stat_default(self):
        assert get_base_stat({}, "attack") == 50
        assert get_base_stat(make_species(attack=55), "attack") == 55

    def test_types_in_slot_order(self):
        species = make_species(types=("poison", "grass"))
        species["types"].reverse()
        assert get_types(species) == ["poison", "grass"]
        assert get_types({}) == ["normal"]

    def test_derive_combatant(self):
        mon = derive_combatant(make_species(hp=35, attack=55, defense=40, speed=90))
        assert mon.species_id == 25
        assert mon.species_name == "pikachu"
        assert mon.types == ["electric"]
        assert mon.max_hp == mon.current_hp == 85
        assert (mon.attack, mon.defense, mon.speed) == (55, 40, 90)
        assert [m.power for m in mon.moves] == [30, 50, 70, 90]
        assert mon.sprite_front.endswith("/25.png")

    def test_derive_combatant_defaults(self):
        mon = derive_combatant({})
        assert mon.species_name == "unknown"
        assert mon.types == ["normal"]
        assert mon.max_hp == 100
        assert mon.attack == mon.defense == mon.speed == 50

    def test_derive_combatant_with_move_details(self):
        details = [make_move_detail(f"m-{p}", p, "electric") for p in (20, 40, 60, 80, 100)]
        mon = derive_combatant(make_species(), details)
        assert [m.power for m in mon.moves] == [20, 40, 80, 100]
        assert mon.moves[0].name == "M 20"
