import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from agentdesk.settings import (
    DEFAULT_MAX_TURNS,
    AppSettings,
    LLMSettings,
    MCPServerSettings,
    load_app_settings,
)

pytestmark = pytest.mark.unit


def test_defaults() -> None:
    settings = AppSettings()

    assert settings.llm.max_turns == DEFAULT_MAX_TURNS
    assert settings.mcp_servers == []
    assert settings.agent.sub_agent_concurrency >= 1


@pytest.mark.parametrize("value, expected", [("", None), ("0", None), (-3, None), ("12", 12), (None, None)])
def test_max_turns_normalisation(value, expected) -> None:
    assert LLMSettings(max_turns=value).max_turns == expected


def test_api_key_blank_becomes_none_and_alias_is_accepted() -> None:
    settings = LLMSettings.model_validate({"api_key": "   ", "api_base": "http://local:8080/v1"})

    assert settings.api_key is None
    assert settings.base_url == "http://local:8080/v1"


def test_mcp_server_requires_http_url() -> None:
    with pytest.raises(ValidationError):
        MCPServerSettings(name="local", url="stdio://server")
    with pytest.raises(ValidationError):
        MCPServerSettings(name="  ", url="http://x.test")


def test_load_json_settings(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps(
            {
                "llm": {"model": "local-model", "max_turns": 5},
                "mcp_servers": [{"name": "docs", "url": "http://docs.test/mcp"}],
                "storage": {"conversations_dir": str(tmp_path / "conv")},
            }
        ),
        encoding="utf-8",
    )

    settings = load_app_settings(path)

    assert settings.llm.model == "local-model"
    assert settings.mcp_servers[0].name == "docs"
    assert settings.storage.conversations_dir == tmp_path / "conv"
    assert settings.to_dict()["llm"]["max_turns"] == 5


def test_load_toml_settings(tmp_path: Path) -> None:
    path = tmp_path / "settings.toml"
    path.write_text(
        '[llm]\nmodel = "toml-model"\n\n[agent]\ncustom_instructions = "Be terse."\n',
        encoding="utf-8",
    )

    settings = load_app_settings(path)

    assert settings.llm.model == "toml-model"
    assert settings.agent.custom_instructions == "Be terse."


def test_invalid_settings_raise_value_error(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"llm": {"temperature": 9}}), encoding="utf-8")

    with pytest.raises(ValueError):
        load_app_settings(path)
