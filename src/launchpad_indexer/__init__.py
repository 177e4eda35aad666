"""Event indexer and competition scheduler for an EVM token-launch protocol."""

__version__ = "0.1.0"
