"""Durable job queue and stage orchestrator for AI-assisted chapter production."""

__version__ = "0.1.0"
