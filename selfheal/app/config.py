"""Application configuration loaded from environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    APP_ENV: str = "development"
    APP_DEBUG: bool = True

    BACKEND_HOST: str = "0.0.0.0"
    BACKEND_PORT: int = 8000

    # ── Source control ───────────────────────────────────────────────
    GITHUB_TOKEN: str = ""
    USE_FORK: bool = True
    TEAM_NAME: str = "TECH_CHAOS"
    LEADER_NAME: str = "ANURAG_MISHRA"
    SANDBOX_BASE: str = "/tmp/self-healing"
    CLONE_DEPTH: int = 50
    CLONE_TIMEOUT: int = 120
    PUSH_TIMEOUT: int = 60
    GIT_TIMEOUT: int = 60
    COMMIT_PREFIX: str = "[AI-AGENT]"
    GIT_AUTHOR_NAME: str = "selfheal-bot"
    GIT_AUTHOR_EMAIL: str = "selfheal-bot@users.noreply.github.com"

    # ── Inference ────────────────────────────────────────────────────
    GEMINI_API_KEY: str = ""
    GEMINI_API_BASE: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    GEMINI_MODEL: str = "gemini-2.0-flash"
    LLM_TIMEOUT: float = 90.0
    LLM_MAX_RETRIES: int = 3
    LLM_MAX_CONCURRENCY: int = 2
    LLM_MAX_TOKENS: int = 8192

    # ── Heal loop ────────────────────────────────────────────────────
    MAX_ATTEMPTS: int = 5
    RETRY_BACKOFF_SECONDS: float = 0.0
    SCAN_MAX_FILES: int = 30
    SCAN_MAX_FILE_BYTES: int = 50_000
    SCAN_BATCH_SIZE: int = 10

    # ── Test execution ───────────────────────────────────────────────
    TEST_BACKEND: str = "local"  # local | docker
    TEST_TIMEOUT: int = 300
    SANDBOX_IMAGE: str = "python:3.11-slim"
    SANDBOX_MEMORY_LIMIT: str = "512m"
    SANDBOX_CPU_LIMIT: float = 1.0

    # ── Sessions & progress ──────────────────────────────────────────
    PROGRESS_TEARDOWN_DELAY: float = 10.0
    STALE_SESSION_SECONDS: int = 120

    # ── Audit ledger (optional) ──────────────────────────────────────
    LEDGER_URL: str = ""
    LEDGER_API_KEY: str = ""

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/selfheal.log"


settings = Settings()
