"""Shared helpers used across agentdesk."""
