"""Gym membership, balance ledger and session billing service."""

__version__ = "1.0.0"
