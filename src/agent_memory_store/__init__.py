"""Hybrid similarity search and deduplication for agent memory and knowledge records."""

__version__ = "0.4.0"
