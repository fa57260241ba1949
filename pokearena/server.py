"""PokeArena battle server.

Thin FastAPI layer over the battle, matchmaking and ranking services. The
server is authoritative: clients send intent (battle id + move id) and get
back the resulting state. Every ArenaError raised below maps to its HTTP
status through one exception handler.
"""

import asyncio
import contextlib
from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from pokearena import __version__
from pokearena.core.auth import Identity, decode_identity
from pokearena.core.battle import (
    BattleStatus,
    BattleSummary,
    BattleView,
    TurnLogEntry,
    battle_summary,
    battle_view,
)
from pokearena.core.engine import BattleService, TurnResult
from pokearena.core.errors import ArenaError, AuthenticationError, NotFoundError
from pokearena.core.matchmaking import MatchmakingService, QueueStatus
from pokearena.core.ranking import RankingEntry, RankingPage, RankingService, StatsSummary
from pokearena.data.pokeapi import PokeAPIClient
from pokearena.data.sql_store import (
    SQLBattleStore,
    SQLQueueStore,
    SQLStatsStore,
    create_db_engine,
    init_db,
)
from pokearena.data.store import InMemoryBattleStore, InMemoryQueueStore, InMemoryStatsStore
from pokearena.utils.config import Settings, get_settings
from pokearena.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------

class Services:
    """Everything a request handler needs, built once per process."""

    def __init__(
        self,
        config: Settings,
        battles: BattleService,
        matchmaking: MatchmakingService,
        ranking: RankingService,
        pokeapi: PokeAPIClient,
    ) -> None:
        self.config = config
        self.battles = battles
        self.matchmaking = matchmaking
        self.ranking = ranking
        self.pokeapi = pokeapi


def build_services(config: Settings | None = None) -> Services:
    """Pick the SQL stores when a database is configured, else the in-memory ones."""
    config = config or get_settings()
    if config.uses_database:
        engine = create_db_engine(config.database_url, config.database_echo)
        init_db(engine)
        battle_store, queue_store, stats_store = (
            SQLBattleStore(engine),
            SQLQueueStore(engine),
            SQLStatsStore(engine),
        )
    else:
        logger.warning("in_memory_store", detail="state is lost on restart and not shared")
        battle_store, queue_store, stats_store = (
            InMemoryBattleStore(),
            InMemoryQueueStore(),
            InMemoryStatsStore(),
        )

    ranking = RankingService(stats_store, config)
    battles = BattleService(battle_store, ranking, config)
    return Services(
        config=config,
        battles=battles,
        matchmaking=MatchmakingService(queue_store, battles),
        ranking=ranking,
        pokeapi=PokeAPIClient(config),
    )


_services: Services | None = None


def get_services() -> Services:
    """FastAPI dependency; tests override it with their own wiring."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


bearer_scheme = HTTPBearer(auto_error=False)


def get_identity(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    services: Annotated[Services, Depends(get_services)],
) -> Identity:
    if credentials is None:
        raise AuthenticationError("Not authenticated")
    return decode_identity(credentials.credentials, services.config)


ServicesDep = Annotated[Services, Depends(get_services)]
IdentityDep = Annotated[Identity, Depends(get_identity)]


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

async def _sweep_forever(services: Services) -> None:
    interval = services.config.sweep_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(services.battles.abandon_stale)
        except Exception:
            logger.exception("sweep_failed")


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    setup_logging()
    services = get_services()
    logger.info("server_started", version=__version__, store=services.battles.store.backend)
    task = None
    if services.config.sweep_interval_seconds > 0:
        task = asyncio.create_task(_sweep_forever(services))
    yield
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


app = FastAPI(title="PokeArena Battle Server", version=__version__, lifespan=lifespan)


@app.exception_handler(ArenaError)
async def arena_error_handler(request: Request, exc: ArenaError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, detail=exc.message)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": "Invalid request",
            "code": "validation_error",
            "retryable": False,
            "errors": errors,
        },
    )


# --- Models ---


class StartAIBattleRequest(BaseModel):
    pokemon: int | str
    opponent_pokemon: int | str | None = None


class AttackRequest(BaseModel):
    move_id: int


class JoinQueueRequest(BaseModel):
    pokemon: int | str


class BattleList(BaseModel):
    battles: list[BattleSummary]
    total: int
    limit: int
    offset: int
    has_more: bool


class StatsResponse(BaseModel):
    stats: StatsSummary
    recent_battles: list[BattleSummary]


# --- App Endpoints ---


@app.get("/health")
async def health(services: ServicesDep):
    return {"status": "ok", "version": __version__, "store": services.battles.store.backend}


# --- Battles ---


@app.post("/battles/ai", response_model=BattleView, status_code=status.HTTP_201_CREATED)
async def start_ai_battle(body: StartAIBattleRequest, identity: IdentityDep, services: ServicesDep):
    combatant = await services.pokeapi.build_combatant(body.pokemon, services.config.battle_level)
    if combatant is None:
        raise NotFoundError(f"Pokemon {body.pokemon} not found")

    opponent_ref = body.opponent_pokemon
    if opponent_ref is None:
        opponent_ref = services.pokeapi.random_pokemon_id(exclude=combatant.species_id)
    opponent = await services.pokeapi.build_combatant(opponent_ref, services.config.battle_level)
    if opponent is None:
        raise NotFoundError(f"Pokemon {opponent_ref} not found")

    battle = await run_in_threadpool(
        services.battles.start_ai_battle,
        identity.user_id,
        identity.display_name,
        combatant,
        opponent,
    )
    return battle_view(battle, identity.user_id)


@app.get("/battles", response_model=BattleList)
def list_battles(
    identity: IdentityDep,
    services: ServicesDep,
    user_id: str | None = None,
    battle_status: Annotated[BattleStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=50)] = 10,
    offset: Annotated[int, Query(ge=0)] = 0,
):
    battles, total = services.battles.store.list_battles(
        user_id=user_id or identity.user_id,
        status=battle_status,
        limit=limit,
        offset=offset,
    )
    return BattleList(
        battles=[battle_summary(b) for b in battles],
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + limit < total,
    )


@app.get("/battles/{battle_id}", response_model=BattleView)
def get_battle(battle_id: str, identity: IdentityDep, services: ServicesDep):
    battle = services.battles.get_battle(battle_id, identity.user_id)
    return battle_view(battle, identity.user_id)


@app.get("/battles/{battle_id}/turns", response_model=list[TurnLogEntry])
def list_turns(battle_id: str, identity: IdentityDep, services: ServicesDep):
    return services.battles.list_turns(battle_id, identity.user_id)


@app.post("/battles/{battle_id}/attack", response_model=TurnResult)
def attack(battle_id: str, body: AttackRequest, identity: IdentityDep, services: ServicesDep):
    return services.battles.resolve_turn(battle_id, identity.user_id, body.move_id)


@app.post("/battles/{battle_id}/forfeit", response_model=TurnResult)
def forfeit(battle_id: str, identity: IdentityDep, services: ServicesDep):
    return services.battles.forfeit(battle_id, identity.user_id)


@app.post("/battles/{battle_id}/timeout", response_model=TurnResult)
def claim_timeout(battle_id: str, identity: IdentityDep, services: ServicesDep):
    return services.battles.claim_timeout(battle_id, identity.user_id)


# --- Matchmaking ---


@app.post("/matchmaking/join", response_model=QueueStatus)
async def join_queue(body: JoinQueueRequest, identity: IdentityDep, services: ServicesDep):
    current = await run_in_threadpool(services.matchmaking.check, identity.user_id)
    if current.in_queue:
        # Already waiting or matched; joining again is a no-op
        return current

    combatant = await services.pokeapi.build_combatant(body.pokemon, services.config.battle_level)
    if combatant is None:
        raise NotFoundError(f"Pokemon {body.pokemon} not found")
    return await run_in_threadpool(
        services.matchmaking.join, identity.user_id, identity.display_name, combatant
    )


@app.post("/matchmaking/leave")
def leave_queue(identity: IdentityDep, services: ServicesDep):
    return {"left": services.matchmaking.leave(identity.user_id)}


@app.get("/matchmaking/status", response_model=QueueStatus)
def queue_status(identity: IdentityDep, services: ServicesDep):
    return services.matchmaking.check(identity.user_id)


# --- Stats & ranking ---


def _recent_battles(services: Services, user_id: str) -> list[BattleSummary]:
    battles, _ = services.battles.store.list_battles(user_id=user_id, limit=5)
    return [battle_summary(b) for b in battles if b.status.is_terminal]


@app.get("/stats/me", response_model=StatsResponse)
def my_stats(identity: IdentityDep, services: ServicesDep):
    stats = services.ranking.get_stats(identity.user_id)
    if stats is None:
        stats = services.ranking.empty_stats(identity.user_id, identity.display_name)
    return StatsResponse(stats=stats, recent_battles=_recent_battles(services, identity.user_id))


@app.get("/stats/{user_id}", response_model=StatsResponse)
def user_stats(user_id: str, identity: IdentityDep, services: ServicesDep):
    stats = services.ranking.get_stats(user_id)
    if stats is None:
        raise NotFoundError(f"No stats for user {user_id}")
    return StatsResponse(stats=stats, recent_battles=_recent_battles(services, user_id))


@app.get("/ranking", response_model=RankingPage)
def ranking(
    services: ServicesDep,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    offset: Annotated[int, Query(ge=0)] = 0,
):
    return services.ranking.get_ranking(limit=limit, offset=offset)


@app.get("/ranking/{user_id}", response_model=RankingEntry)
def ranking_entry(user_id: str, services: ServicesDep):
    entry = services.ranking.get_ranking_entry(user_id)
    if entry is None:
        raise NotFoundError(f"User {user_id} is not ranked")
    return entry
