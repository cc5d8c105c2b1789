"""Queue-driven LLM analysis of AI-assistant conversation logs."""

__version__ = "0.1.0"
