"""Typed errors raised by the battle, matchmaking and ranking services.

Each error carries a stable ``code`` and the HTTP status the API layer
answers with, so the server maps every failure with a single handler.
"""

from __future__ import annotations


class ArenaError(Exception):
    """Base class for all expected PokeArena failures."""

    code = "error"
    status_code = 500
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict[str, str | bool]:
        return {"detail": self.message, "code": self.code, "retryable": self.retryable}


class ValidationError(ArenaError):
    """Missing or malformed input."""

    code = "validation_error"
    status_code = 400


class InvalidMoveError(ValidationError):
    """The move id is not in the acting combatant's move list."""

    code = "invalid_move"


class NotFoundError(ArenaError):
    code = "not_found"
    status_code = 404


class AuthenticationError(ArenaError):
    """Missing, expired or otherwise invalid identity token."""

    code = "unauthorized"
    status_code = 401


class AuthorizationError(ArenaError):
    """The caller is not a participant of the battle."""

    code = "forbidden"
    status_code = 403


class StateConflictError(ArenaError):
    """The battle is not in the state the request expects."""

    code = "state_conflict"
    status_code = 409


class BattleClosedError(StateConflictError):
    code = "battle_closed"


class NotYourTurnError(StateConflictError):
    code = "not_your_turn"


class ConcurrentUpdateError(StateConflictError):
    """Another request changed the battle first. Reload and retry."""

    code = "concurrent_update"
    retryable = True


class UpstreamUnavailableError(ArenaError):
    """PokeAPI could not be reached and no fallback applies."""

    code = "upstream_unavailable"
    status_code = 502


class PersistenceError(ArenaError):
    code = "persistence_error"
    status_code = 500
