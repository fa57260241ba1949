"""Tests for the PvP matchmaking queue."""

import pytest

from pokearena.core.battle import BattleMode, BattleStatus, Side
from pokearena.core.errors import PersistenceError, StateConflictError
from pokearena.core.matchmaking import MatchmakingService, QueueEntry, QueueEntryStatus
from pokearena.data.store import InMemoryQueueStore
from tests.factories import make_combatant


def _join(matchmaking, user_id, name=None, species_id=25, species_name="pikachu"):
    return matchmaking.join(
        user_id,
        name or user_id.capitalize(),
        make_combatant(species_id=species_id, name=species_name),
    )


class TestJoin:
    def test_first_user_waits(self, matchmaking):
        status = _join(matchmaking, "ash")
        assert status.in_queue
        assert status.status is QueueEntryStatus.WAITING
        assert not status.matched
        assert status.battle_id is None

    def test_second_user_is_matched(self, matchmaking, battle_store):
        _join(matchmaking, "ash")
        status = _join(matchmaking, "gary", species_id=4, species_name="charmander")

        assert status.matched
        assert status.matched_with_user_id == "ash"
        battle = battle_store.load(status.battle_id)
        assert battle.mode is BattleMode.PVP
        # The user who waited is player1 and moves first
        assert battle.player1.user_id == "ash"
        assert battle.player2.user_id == "gary"
        assert battle.player2.combatant.species_name == "charmander"
        assert battle.current_turn is Side.PLAYER1

        waiting = matchmaking.check("ash")
        assert waiting.matched
        assert waiting.battle_id == status.battle_id
        assert waiting.matched_with_user_id == "gary"

    def test_repeated_join_is_idempotent(self, matchmaking, battle_store, queue_store):
        first = _join(matchmaking, "ash")
        again = _join(matchmaking, "ash", species_id=150, species_name="mewtwo")
        assert again == first
        assert queue_store.get("ash").species_name == "pikachu"

        matched = _join(matchmaking, "gary")
        assert _join(matchmaking, "gary") == matched
        assert _join(matchmaking, "ash").battle_id == matched.battle_id
        _, total = battle_store.list_battles()
        assert total == 1

    def test_each_waiting_user_is_paired_once(self, matchmaking, battle_store):
        _join(matchmaking, "ash")
        gary = _join(matchmaking, "gary")
        brock = _join(matchmaking, "brock")

        assert gary.matched_with_user_id == "ash"
        assert not brock.matched
        misty = _join(matchmaking, "misty")
        assert misty.matched_with_user_id == "brock"
        _, total = battle_store.list_battles()
        assert total == 2

    def test_lost_claim_tries_next_entry(self, battles):
        class RacyQueue(InMemoryQueueStore):
            """Loses the first claim, as if another join got there first."""

            lost = False

            def claim(self, entry_id, matched_with_user_id):
                if not self.lost:
                    self.lost = True
                    return False
                return super().claim(entry_id, matched_with_user_id)

        queue = RacyQueue()
        matchmaking = MatchmakingService(queue, battles)
        _join(matchmaking, "ash")
        _join(matchmaking, "brock")  # claim on ash lost -> brock waits
        assert not matchmaking.check("brock").matched

        status = _join(matchmaking, "gary")
        assert status.matched_with_user_id == "ash"

    def test_failed_battle_creation_releases_claim(self, queue_store, battles):
        class FailingBattles:
            store = battles.store

            def ensure_available(self, user_id):
                pass

            def abandon_ai_battles(self, user_id):
                return 0

            def init_battle(self, player1, player2, mode):
                raise PersistenceError("Database operation failed")

        matchmaking = MatchmakingService(queue_store, FailingBattles())
        _join(matchmaking, "ash")
        with pytest.raises(PersistenceError):
            _join(matchmaking, "gary")

        assert queue_store.get("ash").status is QueueEntryStatus.WAITING
        assert queue_store.get("gary") is None

    def test_blocked_by_active_pvp_battle(self, matchmaking):
        _join(matchmaking, "ash")
        _join(matchmaking, "gary")
        matchmaking.leave("ash")

        with pytest.raises(StateConflictError):
            _join(matchmaking, "ash")

    def test_active_ai_battle_is_abandoned(self, matchmaking, battles, battle_store):
        ai_battle = battles.start_ai_battle("ash", "Ash", make_combatant(), make_combatant(name="eevee"))
        _join(matchmaking, "ash")
        assert battle_store.load(ai_battle.battle_id).status is BattleStatus.ABANDONED

    def test_rejoin_after_battle_finished(self, matchmaking, battles):
        _join(matchmaking, "ash")
        matched = _join(matchmaking, "gary")
        battles.forfeit(matched.battle_id, "gary")

        status = _join(matchmaking, "ash")
        assert status.status is QueueEntryStatus.WAITING
        assert status.battle_id is None


class TestLeaveAndCheck:
    def test_leave_is_idempotent(self, matchmaking):
        _join(matchmaking, "ash")
        assert matchmaking.leave("ash") is True
        assert matchmaking.leave("ash") is False
        assert not matchmaking.check("ash").in_queue

    def test_check_unknown_user(self, matchmaking):
        status = matchmaking.check("nobody")
        assert not status.in_queue
        assert status.status is None

    def test_waiting_entry_keeps_combatant_snapshot(self, matchmaking, queue_store):
        _join(matchmaking, "ash", species_id=6, species_name="charizard")
        entry = queue_store.get("ash")
        assert isinstance(entry, QueueEntry)
        assert entry.combatant.species_name == "charizard"
        assert entry.species_id == 6
