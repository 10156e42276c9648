"""Pytest configuration for the agentdesk test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

import agentdesk.log as log_module
from agentdesk.agent.persistence import ConversationStore


@pytest.fixture(autouse=True)
def _isolated_logging(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch):
    """Keep log files out of the home directory and drop handlers added by a test."""

    monkeypatch.setenv(log_module.LOG_DIR_ENV, str(tmp_path_factory.mktemp("logs")))
    logger = log_module.logger
    prev_handlers = list(logger.handlers)
    prev_level = logger.level
    yield
    for handler in logger.handlers:
        if handler not in prev_handlers:
            handler.close()
    logger.handlers[:] = prev_handlers
    logger.setLevel(prev_level)


@pytest.fixture
def store(tmp_path: Path) -> ConversationStore:
    return ConversationStore(tmp_path / "conversations")
