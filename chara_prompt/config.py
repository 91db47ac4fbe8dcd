"""Runtime settings, read from the environment (and a .env file if present)."""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

from chara_prompt.llm import DEFAULT_BASE_URL, DEFAULT_MODEL


class Settings(BaseModel):
    user_name: str = "User"
    data_dir: Path = Path("data")
    llm_base_url: str = DEFAULT_BASE_URL
    llm_api_key: str = ""
    llm_model: str = DEFAULT_MODEL
    llm_max_tokens: int | None = None
    llm_timeout: float = 120.0
    log_level: str = "INFO"


def load_settings(env_file: Path | None = None) -> Settings:
    """Build Settings from environment variables.

    Variables already set in the environment win over the .env file.
    """
    load_dotenv(env_file or Path.cwd() / ".env")
    max_tokens = os.getenv("LLM_MAX_TOKENS", "")
    return Settings(
        user_name=os.getenv("USER_NAME", "User"),
        data_dir=Path(os.getenv("DATA_DIR", "data")),
        llm_base_url=os.getenv("LLM_BASE_URL", DEFAULT_BASE_URL),
        llm_api_key=os.getenv("OPENROUTER_API_KEY", ""),
        llm_model=os.getenv("LLM_MODEL", DEFAULT_MODEL),
        llm_max_tokens=int(max_tokens) if max_tokens else None,
        llm_timeout=float(os.getenv("LLM_TIMEOUT", "120")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
