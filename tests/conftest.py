"""Shared fixtures for PokeArena tests."""

import random

import pytest

from pokearena.core.engine import BattleService
from pokearena.core.matchmaking import MatchmakingService
from pokearena.core.ranking import RankingService
from pokearena.data.store import InMemoryBattleStore, InMemoryQueueStore, InMemoryStatsStore
from pokearena.utils.config import Settings


@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        database_url="",
        auth_secret="test-secret",
        sweep_interval_seconds=0,
        rate_ai_battles=False,
    )


@pytest.fixture
def battle_store():
    return InMemoryBattleStore()


@pytest.fixture
def queue_store():
    return InMemoryQueueStore()


@pytest.fixture
def stats_store():
    return InMemoryStatsStore()


@pytest.fixture
def ranking(stats_store, settings):
    return RankingService(stats_store, settings)


@pytest.fixture
def battles(battle_store, ranking, settings):
    return BattleService(battle_store, ranking, settings, rng=random.Random(42))


@pytest.fixture
def matchmaking(queue_store, battles):
    return MatchmakingService(queue_store, battles)
