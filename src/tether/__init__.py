"""Tether - durable, resumable chat streams for LLM agents."""

__version__ = "0.1.0"
