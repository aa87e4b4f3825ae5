"""Yield Sentinel - autonomous Solana yield agent."""

__version__ = "0.1.0"
