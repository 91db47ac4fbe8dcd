"""Tests for chara_prompt.config."""

from pathlib import Path

import pytest

from chara_prompt.config import load_settings
from chara_prompt.llm import DEFAULT_BASE_URL, DEFAULT_MODEL

_VARS = (
    "USER_NAME", "DATA_DIR", "LLM_BASE_URL", "OPENROUTER_API_KEY",
    "LLM_MODEL", "LLM_MAX_TOKENS", "LLM_TIMEOUT", "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(tmp_path: Path) -> None:
    s = load_settings(tmp_path / "missing.env")
    assert s.user_name == "User"
    assert s.data_dir == Path("data")
    assert s.llm_base_url == DEFAULT_BASE_URL
    assert s.llm_model == DEFAULT_MODEL
    assert s.llm_api_key == ""
    assert s.llm_max_tokens is None
    assert s.llm_timeout == 120.0
    assert s.log_level == "INFO"


def test_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("USER_NAME", "Alice")
    monkeypatch.setenv("LLM_MAX_TOKENS", "512")
    monkeypatch.setenv("LLM_TIMEOUT", "30")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    s = load_settings(tmp_path / "missing.env")
    assert s.user_name == "Alice"
    assert s.llm_max_tokens == 512
    assert s.llm_timeout == 30.0
    assert s.log_level == "DEBUG"


def test_env_file_read(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("LLM_MODEL=mistral-7b\nOPENROUTER_API_KEY=secret\n")
    s = load_settings(env_file)
    # load_dotenv writes into os.environ; undo it for the other tests
    monkeypatch.delenv("LLM_MODEL")
    monkeypatch.delenv("OPENROUTER_API_KEY")
    assert s.llm_model == "mistral-7b"
    assert s.llm_api_key == "secret"


def test_environment_wins_over_env_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("USER_NAME=FromFile\n")
    monkeypatch.setenv("USER_NAME", "FromEnv")
    assert load_settings(env_file).user_name == "FromEnv"
