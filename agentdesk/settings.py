"""Typed application settings with Pydantic validation."""

from __future__ import annotations

import json
from pathlib import Path

import tomllib
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_LLM_BASE_URL = "https://api.openai.com/v1"
DEFAULT_LLM_MODEL = "gpt-4.1"
DEFAULT_MAX_TURNS = 40
DEFAULT_SUB_AGENT_CONCURRENCY = 4
DEFAULT_CONVERSATIONS_DIR = Path.home() / ".agentdesk" / "conversations"


class LLMSettings(BaseModel):
    """Settings for connecting to an OpenAI-compatible model service."""

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    base_url: str = Field(DEFAULT_LLM_BASE_URL, alias="api_base")
    model: str = DEFAULT_LLM_MODEL
    api_key: str | None = None
    max_retries: int = Field(3, ge=0)
    timeout_minutes: int = Field(10, ge=1)
    max_turns: int | None = DEFAULT_MAX_TURNS
    temperature: float | None = Field(None, ge=0.0, le=2.0)

    @field_validator("api_key", mode="before")
    @classmethod
    def _normalise_api_key(cls, value: str | None) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("max_turns", mode="before")
    @classmethod
    def _normalise_max_turns(cls, value: int | str | None) -> int | None:
        """Coerce *value* into a positive limit or ``None`` for unlimited turns."""
        if value is None:
            return None
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return None
            try:
                numeric = int(raw)
            except ValueError:  # pragma: no cover - delegated to Pydantic
                return value
        else:
            if isinstance(value, bool):
                raise TypeError("Boolean is not a valid max_turns value")
            numeric = int(value)
        if numeric <= 0:
            return None
        return numeric


class MCPServerSettings(BaseModel):
    """An HTTP MCP server contributing tools at runtime."""

    model_config = ConfigDict(validate_assignment=True)

    name: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = Field(30.0, gt=0)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("MCP server name must not be empty")
        return text

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        """Only HTTP transports are supported."""
        text = value.strip()
        if not text.startswith(("http://", "https://")):
            raise ValueError("Only HTTP/HTTPS MCP server URLs are supported")
        return text


class AgentSettings(BaseModel):
    """Settings shaping every conversation's system prompt and tools."""

    model_config = ConfigDict(validate_assignment=True)

    custom_instructions: str = ""
    sub_agent_concurrency: int = Field(DEFAULT_SUB_AGENT_CONCURRENCY, ge=1)
    fetch_max_bytes: int = Field(512 * 1024, ge=1024)


class StorageSettings(BaseModel):
    """Location of persisted conversations."""

    model_config = ConfigDict(validate_assignment=True)

    conversations_dir: Path = Field(default_factory=lambda: DEFAULT_CONVERSATIONS_DIR)

    @field_validator("conversations_dir", mode="before")
    @classmethod
    def _expand(cls, value: str | Path | None) -> Path:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_CONVERSATIONS_DIR
        return Path(value).expanduser()


class AppSettings(BaseModel):
    """Aggregate settings for the application."""

    model_config = ConfigDict(validate_assignment=True)

    llm: LLMSettings = Field(default_factory=LLMSettings)
    mcp_servers: list[MCPServerSettings] = Field(default_factory=list)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)

    def to_dict(self) -> dict:
        """Return settings as a plain dictionary."""
        return self.model_dump(mode="json")


def load_app_settings(path: str | Path) -> AppSettings:
    """Load :class:`AppSettings` from *path* with validation.

    Format is detected by file extension: ``.toml`` uses :mod:`tomllib`,
    everything else is treated as JSON.  Any validation errors are wrapped into
    :class:`ValueError` with a human-friendly message.
    """
    p = Path(path)
    with p.open("rb") as fh:
        data = tomllib.load(fh) if p.suffix.lower() == ".toml" else json.load(fh)
    try:
        return AppSettings.model_validate(data)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc
