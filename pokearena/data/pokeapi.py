"""PokeAPI client for species records and move details.

Species lookups are required to start a battle: an unknown species yields
``None`` and an unreachable PokeAPI raises UpstreamUnavailableError. Move
lookups are best-effort: any failure just means the species gets the
synthetic fallback moveset.
"""

import asyncio
import random
from typing import Any

import httpx

from pokearena.core.battle import BATTLE_LEVEL, Combatant, derive_combatant
from pokearena.core.errors import UpstreamUnavailableError, ValidationError
from pokearena.core.moves import candidate_move_names
from pokearena.utils.config import Settings, settings as default_settings
from pokearena.utils.logging import get_logger

logger = get_logger(__name__)

# Process-wide caches; both payloads are immutable reference data
_species_cache: dict[str, dict[str, Any]] = {}
_move_cache: dict[str, dict[str, Any]] = {}


def clear_caches() -> None:
    _species_cache.clear()
    _move_cache.clear()


class PokeAPIClient:
    """Client for interacting with PokeAPI."""

    def __init__(
        self,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        config = config or default_settings
        self.base_url = config.pokeapi_base_url.rstrip("/")
        self.timeout = config.pokeapi_timeout_seconds
        self.max_pokemon_id = config.max_pokemon_id
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    def normalize_key(self, id_or_name: int | str) -> str:
        """Validate a species reference; returns the cache/URL key."""
        key = str(id_or_name).strip().lower()
        if not key:
            raise ValidationError("Pokemon id or name is required")
        if key.isdigit() and not 1 <= int(key) <= self.max_pokemon_id:
            raise ValidationError(f"Pokemon id must be between 1 and {self.max_pokemon_id}")
        return key

    def random_pokemon_id(self, exclude: int | None = None, rng: random.Random | None = None) -> int:
        """A random species id, different from ``exclude`` when possible."""
        rng = rng or random.Random()
        while True:
            pokemon_id = rng.randint(1, self.max_pokemon_id)
            if pokemon_id != exclude or self.max_pokemon_id == 1:
                return pokemon_id

    async def get_pokemon(self, id_or_name: int | str) -> dict[str, Any] | None:
        """Fetch a species record from API or cache. ``None`` when unknown."""
        key = self.normalize_key(id_or_name)
        if key in _species_cache:
            return _species_cache[key]

        async with self._client() as client:
            return await self._fetch_pokemon(client, key)

    async def _fetch_pokemon(self, client: httpx.AsyncClient, key: str) -> dict[str, Any] | None:
        if key in _species_cache:
            return _species_cache[key]
        try:
            response = await client.get(f"/pokemon/{key}")
        except httpx.HTTPError as exc:
            logger.warning("pokeapi_unreachable", pokemon=key, error=str(exc))
            raise UpstreamUnavailableError("PokeAPI is unavailable") from exc

        if response.status_code == 404:
            return None
        if response.is_error:
            logger.warning("pokeapi_error", pokemon=key, status=response.status_code)
            raise UpstreamUnavailableError(f"PokeAPI answered {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            logger.warning("pokeapi_bad_payload", pokemon=key)
            raise UpstreamUnavailableError("PokeAPI returned invalid data")
        _species_cache[key] = data
        for alias in (data.get("id"), data.get("name")):
            if alias:
                _species_cache[str(alias).lower()] = data
        return data

    async def get_move(self, name: str) -> dict[str, Any] | None:
        """Fetch move details; ``None`` on any failure."""
        if name in _move_cache:
            return _move_cache[name]
        async with self._client() as client:
            return await self._fetch_move(client, name)

    async def _fetch_move(self, client: httpx.AsyncClient, name: str) -> dict[str, Any] | None:
        if name in _move_cache:
            return _move_cache[name]
        try:
            response = await client.get(f"/move/{name}")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError):
            logger.debug("pokeapi_move_unavailable", move=name)
            return None
        _move_cache[name] = data
        return data

    async def build_combatant(
        self, id_or_name: int | str, level: int = BATTLE_LEVEL
    ) -> Combatant | None:
        """Fetch a species and its candidate moves and derive a Combatant."""
        key = self.normalize_key(id_or_name)
        async with self._client() as client:
            species = await self._fetch_pokemon(client, key)
            if species is None:
                return None

            names = candidate_move_names(species)
            details = await asyncio.gather(*(self._fetch_move(client, n) for n in names))

        if names and not any(details):
            logger.info("pokeapi_moves_fallback", pokemon=species.get("name"))
        return derive_combatant(species, list(details) if names else None, level)

