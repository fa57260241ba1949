"""Matchmaking queue for PvP battles.

Users join with the Pokemon they want to use. The first user waits; the
next user to join claims the oldest waiting entry and a PvP battle is
created on the spot. The claim is a conditional update (it only succeeds
while the entry is still waiting), so two joins racing for the same entry
can never produce two battles.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from pokearena.core.battle import Battle, BattleMode, Combatant, Participant, utcnow
from pokearena.utils.logging import get_logger

if TYPE_CHECKING:
    from pokearena.core.engine import BattleService
    from pokearena.data.store import QueueStore

logger = get_logger(__name__)


class QueueEntryStatus(str, Enum):
    WAITING = "waiting"
    MATCHED = "matched"


class QueueEntry(BaseModel):
    """One user waiting for, or matched into, a PvP battle."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    display_name: str
    species_id: int
    species_name: str
    combatant: Combatant  # Snapshot taken at join time
    status: QueueEntryStatus = QueueEntryStatus.WAITING
    battle_id: str | None = None
    matched_with_user_id: str | None = None
    joined_at: datetime = Field(default_factory=utcnow)


class QueueStatus(BaseModel):
    """What ``join`` / ``check`` report back to the caller."""

    in_queue: bool
    status: QueueEntryStatus | None = None
    matched: bool = False
    battle_id: str | None = None
    matched_with_user_id: str | None = None

    @classmethod
    def from_entry(cls, entry: QueueEntry | None) -> QueueStatus:
        if entry is None:
            return cls(in_queue=False)
        return cls(
            in_queue=True,
            status=entry.status,
            matched=entry.status == QueueEntryStatus.MATCHED and entry.battle_id is not None,
            battle_id=entry.battle_id,
            matched_with_user_id=entry.matched_with_user_id,
        )


class MatchmakingService:
    """join / leave / check on top of a queue store and the battle service."""

    # How many waiting entries to try before giving up and queueing ourselves
    CLAIM_ATTEMPTS = 5

    def __init__(self, queue: QueueStore, battles: BattleService) -> None:
        self.queue = queue
        self.battles = battles

    def check(self, user_id: str) -> QueueStatus:
        return QueueStatus.from_entry(self._current_entry(user_id))

    def leave(self, user_id: str) -> bool:
        """Remove the caller's entry, whatever its status. Idempotent."""
        removed = self.queue.delete(user_id)
        if removed:
            logger.info("queue_left", user_id=user_id)
        return removed

    def _current_entry(self, user_id: str) -> QueueEntry | None:
        """The caller's entry, dropping it if it points at a finished battle."""
        entry = self.queue.get(user_id)
        if entry is None or entry.battle_id is None:
            return entry
        battle = self.battles.store.load(entry.battle_id)
        if battle is None or not battle.is_active:
            self.queue.delete(user_id)
            return None
        return entry

    def join(self, user_id: str, display_name: str, combatant: Combatant) -> QueueStatus:
        """Pair the caller with the oldest waiting user, or enqueue them.

        Repeated joins return the existing entry instead of creating a
        second entry or battle.
        """
        existing = self._current_entry(user_id)
        if existing is not None:
            return QueueStatus.from_entry(existing)

        self.battles.ensure_available(user_id)

        for opponent in self.queue.list_waiting(exclude_user_id=user_id, limit=self.CLAIM_ATTEMPTS):
            if not self.queue.claim(opponent.entry_id, matched_with_user_id=user_id):
                logger.debug("queue_claim_lost", entry_id=opponent.entry_id, user_id=user_id)
                continue

            try:
                battle = self._create_battle(opponent, user_id, display_name, combatant)
            except Exception:
                self.queue.release(opponent.entry_id)
                raise

            self.queue.attach_battle(opponent.entry_id, battle.battle_id)
            own = self.queue.insert(
                QueueEntry(
                    user_id=user_id,
                    display_name=display_name,
                    species_id=combatant.species_id,
                    species_name=combatant.species_name,
                    combatant=combatant,
                    status=QueueEntryStatus.MATCHED,
                    battle_id=battle.battle_id,
                    matched_with_user_id=opponent.user_id,
                )
            )
            logger.info(
                "queue_matched",
                battle_id=battle.battle_id,
                player1=opponent.user_id,
                player2=user_id,
            )
            return QueueStatus.from_entry(own)

        entry = self.queue.insert(
            QueueEntry(
                user_id=user_id,
                display_name=display_name,
                species_id=combatant.species_id,
                species_name=combatant.species_name,
                combatant=combatant,
            )
        )
        logger.info("queue_joined", user_id=user_id, species=combatant.species_name)
        return QueueStatus.from_entry(entry)

    def _create_battle(
        self,
        opponent: QueueEntry,
        user_id: str,
        display_name: str,
        combatant: Combatant,
    ) -> Battle:
        # The user who was already waiting is player1 and moves first.
        self.battles.abandon_ai_battles(opponent.user_id)
        return self.battles.init_battle(
            Participant(
                user_id=opponent.user_id,
                display_name=opponent.display_name,
                combatant=opponent.combatant,
            ),
            Participant(user_id=user_id, display_name=display_name, combatant=combatant),
            BattleMode.PVP,
        )
