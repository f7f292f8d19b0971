from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class Settings:
    """Centralized application settings.

    This keeps environment-variable handling in one place so other modules can
    depend on strongly-typed attributes instead of calling os.getenv
    directly.
    """

    # Language model backend selection: "demo" (default) or "openai".
    llm_backend: str = os.getenv("LLM_BACKEND", "demo")
    llm_model: str = os.getenv("LLM_MODEL", "gpt-4.1-mini")
    openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")

    # Fixed sampling parameters for conversational turns and lesson generation.
    chat_temperature: float = float(os.getenv("CHAT_TEMPERATURE", "0.7"))
    chat_max_tokens: int = int(os.getenv("CHAT_MAX_TOKENS", "2000"))
    lesson_max_tokens: int = int(os.getenv("LESSON_MAX_TOKENS", "3000"))
    # Upper bound on a single model call. Expiry is reported as an upstream error.
    llm_timeout_seconds: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
    # Worker threads for model calls; a timed-out call keeps its worker until the backend returns.
    llm_max_concurrent_calls: int = int(os.getenv("LLM_MAX_CONCURRENT_CALLS", "8"))
    # Used to accrue an approximate cost on each session.
    llm_cost_per_1k_tokens: float = float(os.getenv("LLM_COST_PER_1K_TOKENS", "0.002"))

    # Optional database configuration for SQL-backed repositories.
    database_url: Optional[str] = os.getenv("DATABASE_URL")
    use_sql_repos: bool = os.getenv("USE_SQL_REPOS", "false").lower() == "true"

    # Basic API authentication configuration.
    # When ENABLE_API_AUTH=true, protected endpoints require a valid API key.
    enable_api_auth: bool = os.getenv("ENABLE_API_AUTH", "false").lower() == "true"
    # Comma-separated list of allowed API keys when auth is enabled.
    api_keys: Optional[str] = os.getenv("API_KEYS")

    # Session limits.
    max_active_sessions_per_user: int = int(os.getenv("MAX_ACTIVE_SESSIONS_PER_USER", "5"))
    max_message_history: int = int(os.getenv("MAX_MESSAGE_HISTORY", "1000"))
    # Consecutive malformed structured blocks before a session moves to "error".
    max_extraction_failures: int = int(os.getenv("MAX_EXTRACTION_FAILURES", "3"))

    # Auto-save.
    autosave_interval_seconds: float = float(os.getenv("AUTOSAVE_INTERVAL_SECONDS", "30"))
    autosave_grace_seconds: float = float(os.getenv("AUTOSAVE_GRACE_SECONDS", "30"))
    autosave_batch_size: int = int(os.getenv("AUTOSAVE_BATCH_SIZE", "10"))
    autosave_retry_attempts: int = int(os.getenv("AUTOSAVE_RETRY_ATTEMPTS", "3"))
    autosave_retry_wait_seconds: float = float(os.getenv("AUTOSAVE_RETRY_WAIT_SECONDS", "0.5"))

    # Idle timeout handling. Thresholds are measured from updated_at.
    timeout_warning_minutes: int = int(os.getenv("TIMEOUT_WARNING_MINUTES", "50"))
    timeout_minutes: int = int(os.getenv("TIMEOUT_MINUTES", "60"))
    timeout_check_interval_seconds: float = float(os.getenv("TIMEOUT_CHECK_INTERVAL_SECONDS", "300"))
    sweep_batch_limit: int = int(os.getenv("SWEEP_BATCH_LIMIT", "100"))
    # Abandoned sessions lose their lesson drafts unless this is disabled.
    purge_drafts_on_abandon: bool = os.getenv("PURGE_DRAFTS_ON_ABANDON", "true").lower() == "true"

    # Multi-device sync: "server_wins" (default), "client_wins" or "merge".
    sync_conflict_policy: str = os.getenv("SYNC_CONFLICT_POLICY", "server_wins")

    # Start the auto-save and timeout loops together with the API server.
    enable_background_jobs: bool = os.getenv("ENABLE_BACKGROUND_JOBS", "false").lower() == "true"

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # CORS configuration: comma-separated origins (e.g. "https://app.example.com,https://admin.example.com").
    # Default is "*" (allow all) which is acceptable for local development but
    # should be tightened in production.
    cors_allow_origins: str = os.getenv("CORS_ALLOW_ORIGINS", "*")


settings = Settings()
