"""Meridian - order matching with ledger-backed allocation settlement."""

__version__ = "0.1.0"
