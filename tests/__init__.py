"""Tests for PokeArena."""
