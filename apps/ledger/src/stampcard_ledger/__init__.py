"""Stamp-card loyalty ledger, reward redemption and scratch-prize allocation core."""

__version__ = "0.1.0"
