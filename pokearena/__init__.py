"""PokeArena - server-authoritative Pokemon battles, matchmaking and rankings."""

__version__ = "0.1.0"
