"""Tests for the server-authoritative turn resolver."""

import random
from datetime import timedelta

import pytest

from pokearena.core.battle import BattleMode, BattleStatus, Side, utcnow
from pokearena.core.engine import BattleService
from pokearena.core.errors import (
    AuthorizationError,
    BattleClosedError,
    ConcurrentUpdateError,
    InvalidMoveError,
    NotFoundError,
    NotYourTurnError,
    StateConflictError,
    ValidationError,
)
from pokearena.core.ranking import RankingService
from pokearena.data.store import InMemoryBattleStore
from tests.factories import make_combatant, make_move, make_participant


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _tank(**kwargs):
    """A combatant that survives many hits (100/100 * 40 -> 32..48 per hit)."""
    defaults = dict(hp=500, types=["normal"], moves=[make_move()])
    defaults.update(kwargs)
    return make_combatant(**defaults)


def _start_ai(battles, player=None, opponent=None):
    return battles.start_ai_battle("ash", "Ash", player or _tank(), opponent or _tank(name="rattata"))


def _start_pvp(battles, p1=None, p2=None):
    return battles.init_battle(
        make_participant("ash", "Ash", hp=500, types=["normal"], moves=[make_move()]) if p1 is None else p1,
        make_participant("gary", "Gary", hp=500, types=["normal"], moves=[make_move()]) if p2 is None else p2,
        BattleMode.PVP,
    )


class _MidpointRolls(random.Random):
    """Every damage roll lands on the 1.0 multiplier."""

    def uniform(self, a, b):
        return (a + b) / 2


class _InterleavingStore(InMemoryBattleStore):
    """Runs a competing request right before the next write commits."""

    def __init__(self):
        super().__init__()
        self.before_write = None

    def _write(self, battle, expected_version):
        action, self.before_write = self.before_write, None
        if action is not None:
            action()
        return super()._write(battle, expected_version)


class _Clock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestInitBattle:
    def test_initial_state(self, battles, battle_store):
        p1 = make_participant("ash", "Ash", name="pikachu")
        p1.combatant.current_hp = 3
        battle = battles.init_battle(p1, make_participant("gary", "Gary", name="eevee"), BattleMode.PVP)

        stored = battle_store.load(battle.battle_id)
        assert stored.status is BattleStatus.ACTIVE
        assert stored.turn_number == 0
        assert stored.current_turn is Side.PLAYER1
        assert stored.messages == ["Pikachu vs Eevee!", "Battle begins!"]
        # HP is always reset to max
        assert stored.player1.combatant.current_hp == stored.player1.combatant.max_hp

    def test_ai_battle_uses_ai_identity(self, battles, settings):
        battle = _start_ai(battles)
        assert battle.mode is BattleMode.AI
        assert battle.player1.user_id == "ash"
        assert battle.player2.user_id == settings.ai_user_id
        assert battle.player2.display_name == settings.ai_display_name


# ---------------------------------------------------------------------------
# AI mode
# ---------------------------------------------------------------------------


class TestAITurns:
    def test_full_exchange_counts_two_half_moves(self, battles, battle_store):
        battle = _start_ai(battles)
        result = battles.resolve_turn(battle.battle_id, "ash", 1)

        assert result.status is BattleStatus.ACTIVE
        assert result.turn_number == 2
        assert result.current_turn is Side.PLAYER1
        assert [h.side for h in result.half_moves] == [Side.PLAYER1, Side.PLAYER2]
        assert 32 <= 500 - result.player2_hp <= 48
        assert 32 <= 500 - result.player1_hp <= 48
        assert result.messages[0] == "Pikachu used Tackle!"
        assert "The opposing Rattata used Tackle!" in result.messages

        stored = battle_store.load(battle.battle_id)
        assert stored.version == 1
        assert stored.turn_number == 2

    def test_knockout_skips_counter_attack(self, battles):
        battle = _start_ai(battles, opponent=_tank(name="magikarp", hp=10))
        result = battles.resolve_turn(battle.battle_id, "ash", 1)

        assert result.status is BattleStatus.PLAYER1_WON
        assert result.finished
        assert result.turn_number == 1
        assert len(result.half_moves) == 1
        assert result.player2_hp == 0
        assert result.player1_hp == 500
        assert result.winner_user_id == "ash"
        assert result.current_turn is None
        assert "Magikarp fainted!" in result.messages
        assert result.messages[-1] == "Ash wins the battle!"

    def test_ai_can_win(self, battles, settings):
        battle = _start_ai(battles, player=_tank(hp=1))
        result = battles.resolve_turn(battle.battle_id, "ash", 1)

        assert result.status is BattleStatus.PLAYER2_WON
        assert result.turn_number == 2
        assert result.player1_hp == 0
        assert result.winner_user_id == settings.ai_user_id

    def test_end_to_end_until_faint(self, battles, stats_store):
        battle = _start_ai(battles, player=_tank(hp=2000), opponent=_tank(name="rattata", hp=150))
        result = None
        for _ in range(20):
            result = battles.resolve_turn(battle.battle_id, "ash", 1)
            if result.finished:
                break

        assert result.status is BattleStatus.PLAYER1_WON
        assert result.player2_hp == 0
        # Every exchange but the last one counts two half-moves
        assert result.turn_number % 2 == 1

        stats = stats_store.get("ash")
        assert stats.wins == 1
        assert stats.total_battles == 1
        assert stats.rating == 1000  # AI battles are unrated by default
        assert stats_store.get("ai") is None

    def test_glass_cannon_against_wall(self, battle_store, ranking, settings):
        # 100/100 * 50 one way and 50/50 * 50 the other: 50 damage per hit at the midpoint roll
        service = BattleService(battle_store, ranking, settings, rng=_MidpointRolls(3))
        player = make_combatant(hp=100, attack=100, defense=50, types=["normal"], moves=[make_move(power=50)])
        wall = make_combatant(
            name="shuckle", hp=100, attack=50, defense=100, types=["normal"], moves=[make_move(power=50)]
        )
        battle = _start_ai(service, player=player, opponent=wall)

        first = service.resolve_turn(battle.battle_id, "ash", 1)
        assert first.status is BattleStatus.ACTIVE
        assert [h.damage for h in first.half_moves] == [50, 50]
        assert (first.player1_hp, first.player2_hp) == (50, 50)

        last = service.resolve_turn(battle.battle_id, "ash", 1)
        assert last.status is BattleStatus.PLAYER1_WON
        assert last.turn_number == 3
        assert [h.side for h in last.half_moves] == [Side.PLAYER1]
        assert (last.player1_hp, last.player2_hp) == (50, 0)
        assert "The opposing Shuckle used Tackle!" not in last.messages

    @pytest.mark.parametrize("seed", range(8))
    def test_glass_cannon_damage_band(self, battle_store, ranking, settings, seed):
        service = BattleService(battle_store, ranking, settings, rng=random.Random(seed))
        player = make_combatant(hp=100, attack=100, defense=50, types=["normal"], moves=[make_move(power=50)])
        wall = make_combatant(
            name="shuckle", hp=100, attack=50, defense=100, types=["normal"], moves=[make_move(power=50)]
        )
        battle = _start_ai(service, player=player, opponent=wall)

        half_moves = []
        result = None
        for _ in range(10):
            result = service.resolve_turn(battle.battle_id, "ash", 1)
            half_moves.extend(result.half_moves)
            if result.finished:
                break

        assert result.finished
        assert all(40 <= h.damage <= 60 for h in half_moves)
        assert result.turn_number == len(half_moves)
        # Nobody strikes back after a faint
        if result.status is BattleStatus.PLAYER1_WON:
            assert [h.side for h in result.half_moves] == [Side.PLAYER1]
            assert result.player2_hp == 0 < result.player1_hp
        else:
            assert result.status is BattleStatus.PLAYER2_WON
            assert [h.side for h in result.half_moves] == [Side.PLAYER1, Side.PLAYER2]
            assert result.player1_hp == 0 < result.player2_hp

    def test_ai_battles_rated_when_enabled(self, battle_store, stats_store, settings):
        settings.rate_ai_battles = True
        service = BattleService(
            battle_store, RankingService(stats_store, settings), settings, rng=random.Random(1)
        )
        battle = _start_ai(service, opponent=_tank(name="magikarp", hp=10))
        service.resolve_turn(battle.battle_id, "ash", 1)
        assert stats_store.get("ash").rating == 1016

    def test_immunity_deals_no_damage(self, battles):
        ghost = _tank(name="gastly", types=["ghost"])
        battle = _start_ai(battles, opponent=ghost)
        result = battles.resolve_turn(battle.battle_id, "ash", 1)

        assert result.half_moves[0].damage == 0
        assert result.half_moves[0].effectiveness == 0.0
        assert "It doesn't affect Gastly..." in result.messages
        assert result.player2_hp == 500


# ---------------------------------------------------------------------------
# PvP mode
# ---------------------------------------------------------------------------


class TestPvPTurns:
    def test_turns_alternate(self, battles):
        battle = _start_pvp(battles)

        with pytest.raises(NotYourTurnError):
            battles.resolve_turn(battle.battle_id, "gary", 1)

        first = battles.resolve_turn(battle.battle_id, "ash", 1)
        assert first.turn_number == 1
        assert first.current_turn is Side.PLAYER2
        assert len(first.half_moves) == 1
        assert first.player1_hp == 500

        with pytest.raises(NotYourTurnError):
            battles.resolve_turn(battle.battle_id, "ash", 1)

        second = battles.resolve_turn(battle.battle_id, "gary", 1)
        assert second.turn_number == 2
        assert second.current_turn is Side.PLAYER1

    def test_knockout_finishes_battle(self, battles, stats_store):
        p2 = make_participant("gary", "Gary", hp=5, moves=[make_move()])
        battle = _start_pvp(battles, p2=p2)
        result = battles.resolve_turn(battle.battle_id, "ash", 1)

        assert result.status is BattleStatus.PLAYER1_WON
        assert result.player2_hp == 0
        assert stats_store.get("ash").rating == 1016
        assert stats_store.get("gary").rating == 984

    def test_forfeit_ignores_hp(self, battles, stats_store, battle_store):
        battle = _start_pvp(battles)
        battles.resolve_turn(battle.battle_id, "ash", 1)
        result = battles.forfeit(battle.battle_id, "gary")

        assert result.status is BattleStatus.PLAYER1_WON
        assert result.winner_user_id == "ash"
        assert result.messages[0] == "Gary forfeited the battle!"
        assert battle_store.load(battle.battle_id).finished_at is not None

        ash, gary = stats_store.get("ash"), stats_store.get("gary")
        assert (ash.wins, ash.losses, ash.rating) == (1, 0, 1016)
        assert (gary.wins, gary.losses, gary.rating) == (0, 1, 984)
        assert ash.species_usage == {"25": 1}

    def test_forfeit_on_own_turn_by_player1(self, battles):
        battle = _start_pvp(battles)
        result = battles.forfeit(battle.battle_id, "ash")
        assert result.status is BattleStatus.PLAYER2_WON


# ---------------------------------------------------------------------------
# Validation and terminal states
# ---------------------------------------------------------------------------


class TestValidation:
    def test_missing_battle(self, battles):
        with pytest.raises(NotFoundError):
            battles.resolve_turn("nope", "ash", 1)

    def test_outsider_rejected(self, battles):
        battle = _start_pvp(battles)
        with pytest.raises(AuthorizationError):
            battles.resolve_turn(battle.battle_id, "brock", 1)
        with pytest.raises(AuthorizationError):
            battles.get_battle(battle.battle_id, "brock")

    def test_invalid_move_leaves_no_trace(self, battles, battle_store):
        battle = _start_pvp(battles)
        with pytest.raises(InvalidMoveError):
            battles.resolve_turn(battle.battle_id, "ash", 7)

        stored = battle_store.load(battle.battle_id)
        assert stored.version == 0
        assert stored.turn_number == 0
        assert stored.messages == battle.messages
        assert battles.list_turns(battle.battle_id, "ash") == []

    def test_finished_battle_is_closed(self, battles, stats_store):
        battle = _start_pvp(battles)
        battles.forfeit(battle.battle_id, "gary")

        with pytest.raises(BattleClosedError):
            battles.resolve_turn(battle.battle_id, "ash", 1)
        with pytest.raises(BattleClosedError):
            battles.forfeit(battle.battle_id, "ash")

        # Stats applied exactly once
        assert stats_store.get("ash").total_battles == 1
        assert stats_store.get("gary").total_battles == 1

    def test_ranking_failure_does_not_fail_turn(self, battle_store, settings):
        class BrokenRanking:
            def record_battle(self, battle):
                raise RuntimeError("stats database down")

        service = BattleService(battle_store, BrokenRanking(), settings, rng=random.Random(0))
        battle = _start_pvp(service)
        result = service.forfeit(battle.battle_id, "gary")
        assert result.status is BattleStatus.PLAYER1_WON
        assert battle_store.load(battle.battle_id).status is BattleStatus.PLAYER1_WON

    def test_turn_log(self, battles):
        battle = _start_ai(battles)
        battles.resolve_turn(battle.battle_id, "ash", 1)
        entries = battles.list_turns(battle.battle_id, "ash")

        assert [e.turn_number for e in entries] == [1, 2]
        assert entries[0].user_id == "ash"
        assert entries[0].defender_hp_before == 500
        assert entries[0].defender_hp_after == 500 - entries[0].damage
        assert entries[1].side is Side.PLAYER2


# ---------------------------------------------------------------------------
# One active battle per user
# ---------------------------------------------------------------------------


class TestAvailability:
    def test_new_ai_battle_abandons_previous(self, battles, battle_store, stats_store):
        first = _start_ai(battles)
        second = _start_ai(battles)

        assert battle_store.load(first.battle_id).status is BattleStatus.ABANDONED
        assert battle_store.load(second.battle_id).is_active
        assert stats_store.get("ash") is None

    def test_active_pvp_blocks_ai_battle(self, battles):
        _start_pvp(battles)
        with pytest.raises(StateConflictError):
            _start_ai(battles)


# ---------------------------------------------------------------------------
# Timeouts and abandonment
# ---------------------------------------------------------------------------


class TestTimeouts:
    def _service(self, battle_store, ranking, settings):
        clock = _Clock()
        return BattleService(battle_store, ranking, settings, rng=random.Random(5), clock=clock), clock

    def test_claim_after_timeout(self, battle_store, ranking, settings, stats_store):
        service, clock = self._service(battle_store, ranking, settings)
        battle = _start_pvp(service)

        with pytest.raises(StateConflictError):
            service.claim_timeout(battle.battle_id, "gary")

        clock.advance(seconds=settings.turn_timeout_seconds + 1)
        result = service.claim_timeout(battle.battle_id, "gary")
        assert result.status is BattleStatus.PLAYER2_WON
        assert result.messages[0] == "Ash ran out of time!"
        assert stats_store.get("gary").wins == 1

    def test_cannot_claim_own_turn(self, battle_store, ranking, settings):
        service, clock = self._service(battle_store, ranking, settings)
        battle = _start_pvp(service)
        clock.advance(minutes=5)
        with pytest.raises(StateConflictError):
            service.claim_timeout(battle.battle_id, "ash")

    def test_ai_battles_have_no_timer(self, battle_store, ranking, settings):
        service, clock = self._service(battle_store, ranking, settings)
        battle = _start_ai(service)
        clock.advance(minutes=5)
        with pytest.raises(ValidationError):
            service.claim_timeout(battle.battle_id, "ash")

    def test_abandon_stale(self, battle_store, ranking, settings, stats_store):
        service, clock = self._service(battle_store, ranking, settings)
        battle = _start_pvp(service)

        assert service.abandon_stale() == 0
        clock.advance(minutes=settings.abandon_after_minutes + 1)
        assert service.abandon_stale() == 1

        stored = battle_store.load(battle.battle_id)
        assert stored.status is BattleStatus.ABANDONED
        assert stored.winner_user_id is None
        assert stats_store.get("ash") is None
        assert service.abandon_stale() == 0


# ---------------------------------------------------------------------------
# Concurrent requests
# ---------------------------------------------------------------------------


class TestConcurrentUpdates:
    """A request whose write loses the version race fails and changes nothing."""

    @pytest.fixture
    def store(self):
        return _InterleavingStore()

    @pytest.fixture
    def service(self, store, ranking, settings):
        return BattleService(store, ranking, settings, rng=random.Random(9), clock=_Clock())

    def _double_submit(self, service, store, battle_id):
        """Ash's move lands between another request's load and its write."""
        store.before_write = lambda: service.resolve_turn(battle_id, "ash", 1)

    def test_resolve_turn_loses_race(self, service, store):
        battle = _start_pvp(service)
        self._double_submit(service, store, battle.battle_id)

        with pytest.raises(ConcurrentUpdateError) as excinfo:
            service.resolve_turn(battle.battle_id, "ash", 1)
        assert excinfo.value.retryable

        stored = store.load(battle.battle_id)
        assert stored.version == 1
        assert stored.turn_number == 1
        assert stored.current_turn is Side.PLAYER2
        assert stored.player2.combatant.current_hp > 500 - 2 * 32
        assert len(service.list_turns(battle.battle_id, "ash")) == 1

    def test_forfeit_loses_race(self, service, store, stats_store):
        battle = _start_pvp(service)
        self._double_submit(service, store, battle.battle_id)

        with pytest.raises(ConcurrentUpdateError):
            service.forfeit(battle.battle_id, "gary")

        stored = store.load(battle.battle_id)
        assert stored.status is BattleStatus.ACTIVE
        assert stored.winner_user_id is None
        assert stored.turn_number == 1
        assert stats_store.get("ash") is None
        assert stats_store.get("gary") is None

    def test_claim_timeout_loses_race(self, service, store, settings, stats_store):
        battle = _start_pvp(service)
        service.clock.advance(seconds=settings.turn_timeout_seconds + 1)
        self._double_submit(service, store, battle.battle_id)

        with pytest.raises(ConcurrentUpdateError):
            service.claim_timeout(battle.battle_id, "gary")

        stored = store.load(battle.battle_id)
        assert stored.status is BattleStatus.ACTIVE
        assert stored.current_turn is Side.PLAYER2
        assert stats_store.get("gary") is None

    def test_retry_after_race_succeeds(self, service, store):
        battle = _start_pvp(service)
        self._double_submit(service, store, battle.battle_id)
        with pytest.raises(ConcurrentUpdateError):
            service.resolve_turn(battle.battle_id, "ash", 1)

        # Reloaded state says it is now Gary's turn
        with pytest.raises(NotYourTurnError):
            service.resolve_turn(battle.battle_id, "ash", 1)
        result = service.resolve_turn(battle.battle_id, "gary", 1)
        assert result.turn_number == 2
        assert store.load(battle.battle_id).version == 2
