from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4-turbo"
    OPENAI_FALLBACK_MODEL: str = "gpt-4o"
    OPENAI_TIMEOUT: float = 120.0
    PLAN_MAX_TOKENS: int = 4000
    PLAN_TEMPERATURE: float = 0.7
    STRUCTURE_MAX_TOKENS: int = 8000
    STRUCTURE_TEMPERATURE: float = 0.3
    DB_URL: str = "sqlite:///./data/blueprint.db"
    KB1_PATH: str = "./kb/knowledge-base-1.md"
    KB2_PATH: str = "./kb/knowledge-base-2.md"
    KB_CHAR_BUDGET: int = 5000
    REQUIRED_PHASES: int = 12
    JOB_STALE_MINUTES: int = 5
    EXPORT_STALE_MINUTES: int = 15
    STEP_MAX_ATTEMPTS: int = 3
    AGENT_FILENAME: str = "CLAUDE.md"
    MAX_FILE_CHARS: int = 50 * 1024
    LOG_LEVEL: str = "INFO"
    cors_allow_origins: List[str] = ["*"]
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

settings = Settings()
