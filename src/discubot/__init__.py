"""Discubot: discussion ingestion and task routing pipeline."""

__version__ = "0.1.0"
