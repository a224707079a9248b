"""Aviator crash-game engine: round state machine, bet registry, wallet ledger."""

__version__ = "1.0.0"
