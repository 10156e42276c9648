"""Agentic LLM client runtime with tool orchestration and session persistence."""

__version__ = "0.4.0"
