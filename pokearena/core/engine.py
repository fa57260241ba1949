"""Server-authoritative battle turn resolution.

Handles the lifecycle of a battle:
    init -> resolve turns / forfeit / timeout / abandon -> finalize

Every operation loads the battle, validates the request, applies the
changes to that loaded copy and commits it with one conditional write
(``version`` must be unchanged). A rejected request therefore never leaves
a trace, and a request that lost a race gets a retryable
ConcurrentUpdateError instead of overwriting newer state.

AI mode: one call resolves a full exchange (player move, then the AI's
counter-attack if it is still standing). PvP mode: one call resolves one
half-move and passes the turn to the other player.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from pokearena.core.battle import (
    Battle,
    BattleMode,
    BattleStatus,
    Combatant,
    HalfMove,
    Participant,
    Side,
    TurnLogEntry,
    utcnow,
)
from pokearena.core.errors import (
    AuthorizationError,
    BattleClosedError,
    InvalidMoveError,
    NotFoundError,
    NotYourTurnError,
    StateConflictError,
    ValidationError,
)
from pokearena.core.moves import Move, calculate_damage, effectiveness_message
from pokearena.utils.config import Settings, settings as default_settings
from pokearena.utils.logging import get_logger

if TYPE_CHECKING:
    from pokearena.core.ranking import RankingService
    from pokearena.data.store import BattleStore

logger = get_logger(__name__)


class TurnResult(BaseModel):
    """Everything a client needs to render the outcome of a request."""

    battle_id: str
    mode: BattleMode
    status: BattleStatus
    turn_number: int
    current_turn: Side | None
    player1_hp: int
    player1_max_hp: int
    player2_hp: int
    player2_max_hp: int
    messages: list[str] = Field(default_factory=list)  # Only the lines added by this request
    half_moves: list[HalfMove] = Field(default_factory=list)
    winner_user_id: str | None = None
    last_action: dict[str, Any] | None = None

    @property
    def finished(self) -> bool:
        return self.status.is_terminal


class BattleService:
    """Creates battles and resolves every state transition on them."""

    def __init__(
        self,
        store: BattleStore,
        ranking: RankingService | None = None,
        config: Settings | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ranking = ranking
        self.config = config or default_settings
        self.rng = rng or random.Random()
        self.clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def init_battle(self, player1: Participant, player2: Participant, mode: BattleMode) -> Battle:
        """Persist a new ACTIVE battle. Player1 moves first."""
        p1 = player1.model_copy(deep=True)
        p2 = player2.model_copy(deep=True)
        for participant in (p1, p2):
            participant.combatant.current_hp = participant.combatant.max_hp

        now = self.clock()
        battle = Battle(
            mode=mode,
            player1=p1,
            player2=p2,
            current_turn=Side.PLAYER1,
            turn_number=0,
            messages=[
                f"{p1.combatant.display_name} vs {p2.combatant.display_name}!",
                "Battle begins!",
            ],
            started_at=now,
            updated_at=now,
        )
        self.store.create(battle)
        logger.info(
            "battle_created",
            battle_id=battle.battle_id,
            mode=mode.value,
            player1=p1.user_id,
            player2=p2.user_id,
        )
        return battle

    def start_ai_battle(
        self,
        user_id: str,
        display_name: str,
        combatant: Combatant,
        opponent: Combatant,
    ) -> Battle:
        """Start a battle against the AI, closing any AI battle the user left open."""
        self.ensure_available(user_id)
        return self.init_battle(
            Participant(user_id=user_id, display_name=display_name, combatant=combatant),
            Participant(
                user_id=self.config.ai_user_id,
                display_name=self.config.ai_display_name,
                combatant=opponent,
            ),
            BattleMode.AI,
        )

    def ensure_available(self, user_id: str) -> None:
        """Enforce one active battle per user.

        An active PvP battle blocks; an active AI battle is abandoned.
        """
        for battle in self.store.find_active(user_id):
            if battle.mode is BattleMode.PVP:
                raise StateConflictError(
                    f"You already have an active PvP battle ({battle.battle_id})"
                )
        self.abandon_ai_battles(user_id)

    def abandon_ai_battles(self, user_id: str) -> int:
        count = 0
        for battle in self.store.find_active(user_id):
            if battle.mode is BattleMode.AI and self._abandon(battle):
                count += 1
        return count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_battle(self, battle_id: str, user_id: str) -> Battle:
        """Load a battle the caller takes part in."""
        battle = self.store.load(battle_id)
        if battle is None:
            raise NotFoundError(f"Battle {battle_id} not found")
        if battle.side_of(user_id) is None:
            raise AuthorizationError("You are not a participant of this battle")
        return battle

    def list_turns(self, battle_id: str, user_id: str) -> list[TurnLogEntry]:
        self.get_battle(battle_id, user_id)
        return self.store.list_turns(battle_id)

    # ------------------------------------------------------------------
    # Turn resolution
    # ------------------------------------------------------------------

    def resolve_turn(self, battle_id: str, user_id: str, move_id: int) -> TurnResult:
        """Apply the caller's move (and, in AI mode, the AI's reply)."""
        battle = self.get_battle(battle_id, user_id)
        side = battle.side_of(user_id)
        assert side is not None

        if not battle.is_active:
            raise BattleClosedError("Battle is not active")
        if battle.mode is BattleMode.AI and side is not Side.PLAYER1:
            raise NotYourTurnError("The AI side cannot be controlled")
        if battle.mode is BattleMode.PVP and battle.current_turn is not side:
            raise NotYourTurnError("Not your turn")

        move = battle.participant(side).combatant.get_move(move_id)
        if move is None:
            raise InvalidMoveError(f"Invalid move id {move_id}")

        expected_version = battle.version
        first_message = len(battle.messages)
        half_moves: list[HalfMove] = []
        log_entries: list[TurnLogEntry] = []

        self._apply_move(battle, side, move, half_moves, log_entries)
        if battle.participant(side.other).combatant.is_fainted:
            return self._finish(battle, side.won_status, expected_version, first_message, half_moves, log_entries)

        if battle.mode is BattleMode.AI:
            ai_combatant = battle.player2.combatant
            ai_move = self.rng.choice(ai_combatant.moves)
            self._apply_move(battle, Side.PLAYER2, ai_move, half_moves, log_entries)
            if battle.player1.combatant.is_fainted:
                return self._finish(
                    battle, BattleStatus.PLAYER2_WON, expected_version, first_message, half_moves, log_entries
                )
            battle.current_turn = Side.PLAYER1
        else:
            battle.current_turn = side.other

        saved = self.store.save(battle, expected_version)
        self._log_turns(log_entries)
        return self._result(saved, first_message, half_moves)

    def forfeit(self, battle_id: str, user_id: str) -> TurnResult:
        """The caller gives up; the other side wins whatever the HP totals."""
        battle = self.get_battle(battle_id, user_id)
        if not battle.is_active:
            raise BattleClosedError("Battle is not active")
        side = battle.side_of(user_id)
        assert side is not None

        expected_version = battle.version
        first_message = len(battle.messages)
        battle.messages.append(f"{battle.participant(side).display_name} forfeited the battle!")
        battle.last_action = {"type": "forfeit", "side": side.value, "forfeited_by": user_id}
        return self._finish(battle, side.other.won_status, expected_version, first_message, [], [])

    def claim_timeout(self, battle_id: str, user_id: str) -> TurnResult:
        """Claim the win when a PvP opponent let their turn timer run out."""
        battle = self.get_battle(battle_id, user_id)
        if not battle.is_active:
            raise BattleClosedError("Battle is not active")
        if battle.mode is not BattleMode.PVP:
            raise ValidationError("Turn timeouts only apply to PvP battles")
        side = battle.side_of(user_id)
        assert side is not None
        if battle.current_turn is side:
            raise StateConflictError("It is your turn")

        elapsed = (self.clock() - battle.updated_at).total_seconds()
        if elapsed < self.config.turn_timeout_seconds:
            raise StateConflictError(
                f"Turn timer has not expired ({int(self.config.turn_timeout_seconds - elapsed)}s left)"
            )

        idle = battle.participant(side.other)
        expected_version = battle.version
        first_message = len(battle.messages)
        battle.messages.append(f"{idle.display_name} ran out of time!")
        battle.last_action = {"type": "timeout", "side": side.other.value, "timed_out": idle.user_id}
        return self._finish(battle, side.won_status, expected_version, first_message, [], [])

    def abandon_stale(self, older_than: timedelta | None = None) -> int:
        """Mark ACTIVE battles idle since the cutoff as ABANDONED. Returns how many."""
        older_than = older_than or timedelta(minutes=self.config.abandon_after_minutes)
        cutoff = self.clock() - older_than
        count = sum(1 for battle in self.store.list_stale(cutoff) if self._abandon(battle))
        if count:
            logger.info("battles_abandoned", count=count)
        return count

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_move(
        self,
        battle: Battle,
        side: Side,
        move: Move,
        half_moves: list[HalfMove],
        log_entries: list[TurnLogEntry],
    ) -> None:
        attacker = battle.participant(side)
        defender = battle.participant(side.other)
        atk_mon = attacker.combatant
        def_mon = defender.combatant
        attacker_hp_before = atk_mon.current_hp
        defender_hp_before = def_mon.current_hp

        result = calculate_damage(
            atk_mon.attack,
            def_mon.defense,
            move.power,
            move.type,
            def_mon.types,
            rng=self.rng,
        )
        dealt = def_mon.take_damage(result.damage)
        battle.turn_number += 1

        prefix = "The opposing " if battle.mode is BattleMode.AI and side is Side.PLAYER2 else ""
        battle.messages.append(f"{prefix}{atk_mon.display_name} used {move.name}!")
        eff_msg = effectiveness_message(result.effectiveness, def_mon.display_name)
        if eff_msg:
            battle.messages.append(eff_msg)
        if result.effectiveness > 0:
            battle.messages.append(f"{def_mon.display_name} took {dealt} damage.")
        if def_mon.is_fainted:
            battle.messages.append(f"{def_mon.display_name} fainted!")

        battle.last_action = {
            "type": "attack",
            "side": side.value,
            "move_id": move.id,
            "move_name": move.name,
            "damage": dealt,
            "effectiveness": result.effectiveness,
            "effectiveness_message": eff_msg,
            "target_hp_after": def_mon.current_hp,
        }
        half_moves.append(
            HalfMove(
                turn_number=battle.turn_number,
                side=side,
                move_id=move.id,
                move_name=move.name,
                move_type=move.type,
                damage=dealt,
                effectiveness=result.effectiveness,
                target_hp_after=def_mon.current_hp,
            )
        )
        log_entries.append(
            TurnLogEntry(
                battle_id=battle.battle_id,
                turn_number=battle.turn_number,
                side=side,
                user_id=attacker.user_id,
                move_id=move.id,
                move_name=move.name,
                damage=dealt,
                effectiveness=result.effectiveness,
                attacker_hp_before=attacker_hp_before,
                attacker_hp_after=atk_mon.current_hp,
                defender_hp_before=defender_hp_before,
                defender_hp_after=def_mon.current_hp,
                created_at=self.clock(),
            )
        )

    def _finish(
        self,
        battle: Battle,
        status: BattleStatus,
        expected_version: int,
        first_message: int,
        half_moves: list[HalfMove],
        log_entries: list[TurnLogEntry],
    ) -> TurnResult:
        """Commit a terminal status and run the post-battle stats update once."""
        battle.status = status
        battle.current_turn = None
        battle.finished_at = self.clock()
        if status in (BattleStatus.PLAYER1_WON, BattleStatus.PLAYER2_WON):
            winner = battle.player1 if status is BattleStatus.PLAYER1_WON else battle.player2
            battle.winner_user_id = winner.user_id
            battle.messages.append(f"{winner.display_name} wins the battle!")
        elif status is BattleStatus.DRAW:
            battle.messages.append("The battle ended in a draw!")

        saved = self.store.finalize(battle, expected_version)
        logger.info(
            "battle_finished",
            battle_id=saved.battle_id,
            status=saved.status.value,
            turns=saved.turn_number,
            winner=saved.winner_user_id,
        )
        self._log_turns(log_entries)
        self._record_stats(saved)
        return self._result(saved, first_message, half_moves)

    def _abandon(self, battle: Battle) -> bool:
        expected_version = battle.version
        battle.status = BattleStatus.ABANDONED
        battle.current_turn = None
        battle.finished_at = self.clock()
        battle.messages.append("The battle was abandoned.")
        try:
            self.store.finalize(battle, expected_version)
        except StateConflictError:
            logger.info("battle_abandon_skipped", battle_id=battle.battle_id)
            return False
        logger.info("battle_abandoned", battle_id=battle.battle_id)
        return True

    def _log_turns(self, entries: list[TurnLogEntry]) -> None:
        if not entries:
            return
        try:
            self.store.append_turns(entries)
        except Exception:
            logger.exception("turn_log_failed", battle_id=entries[0].battle_id)

    def _record_stats(self, battle: Battle) -> None:
        if self.ranking is None:
            return
        try:
            self.ranking.record_battle(battle)
        except Exception:
            logger.exception("stats_update_failed", battle_id=battle.battle_id)

    @staticmethod
    def _result(battle: Battle, first_message: int, half_moves: list[HalfMove]) -> TurnResult:
        return TurnResult(
            battle_id=battle.battle_id,
            mode=battle.mode,
            status=battle.status,
            turn_number=battle.turn_number,
            current_turn=battle.current_turn,
            player1_hp=battle.player1.combatant.current_hp,
            player1_max_hp=battle.player1.combatant.max_hp,
            player2_hp=battle.player2.combatant.current_hp,
            player2_max_hp=battle.player2.combatant.max_hp,
            messages=battle.messages[first_message:],
            half_moves=half_moves,
            winner_user_id=battle.winner_user_id,
            last_action=battle.last_action,
        )
