from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "postgresql://diarybot:diarybot@db:5432/diarybot"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Comma-separated allowed origins, or "*" to allow all.
    CORS_ORIGINS: str = "*"

    # Operator endpoints (metrics reset, circuit reset, maintenance).
    # Empty string disables them.
    ADMIN_TOKEN: str = ""

    # --- LINE Messaging API ---
    LINE_CHANNEL_SECRET: str = ""
    LINE_CHANNEL_ACCESS_TOKEN: str = ""
    LINE_API_BASE_URL: str = "https://api.line.me"
    LINE_HTTP_TIMEOUT_SECONDS: float = 15.0
    LINE_TYPING_SECONDS: int = 20

    # --- OpenAI chat completions ---
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_MODEL: str = "gpt-3.5-turbo"
    OPENAI_HTTP_TIMEOUT_SECONDS: float = 30.0
    ANALYSIS_MAX_TOKENS: int = 300
    ANALYSIS_TEMPERATURE: float = 0.3
    SUMMARY_MAX_TOKENS: int = 150
    SUMMARY_TEMPERATURE: float = 0.2

    # --- Retry / circuit breaker (seconds) ---
    RETRY_BASE_DELAY: float = 0.5
    RETRY_MAX_DELAY: float = 2.0
    RETRY_BACKOFF_MULTIPLIER: float = 2.0
    LLM_MAX_RETRIES: int = 1
    DB_MAX_RETRIES: int = 2
    MESSAGING_MAX_RETRIES: int = 3
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RESET_TIMEOUT_SECONDS: float = 60.0

    # --- Tier budgets (milliseconds of wall clock per request) ---
    LEVEL_1_BUDGET_MS: float = 8.0
    LEVEL_3_BUDGET_MS: float = 2.0
    TIER1_LLM_TIMEOUT_SECONDS: float = 3.0

    # --- Summary cache ---
    SUMMARY_CACHE_TTL_HOURS: float = 24.0
    SUMMARY_WINDOW_DAYS: int = 7
    SUMMARY_MIN_ENTRIES: int = 2
    SUMMARY_ENTRY_MAX_CHARS: int = 300
    SUMMARY_MAX_ENTRIES: int = 20

    # --- Dispatch ---
    # "tiered": synchronous tiered analysis, optional background enrichment.
    # "deferred": reply with a pending message, analyse in the background.
    ANALYSIS_MODE: str = "tiered"
    ENRICH_DEGRADED_RESULTS: bool = True
    ASYNC_SUMMARY_TIMEOUT_SECONDS: float = 5.0

    # --- Performance monitor ---
    PERFORMANCE_MAX_SAMPLES: int = 1000
    PERFORMANCE_TREND_WINDOW_MINUTES: int = 10
    HEALTH_P95_CRITICAL_MS: float = 10.0
    HEALTH_P95_WARNING_MS: float = 8.0
    HEALTH_SUCCESS_CRITICAL_PCT: float = 80.0
    HEALTH_SUCCESS_WARNING_PCT: float = 95.0
    HEALTH_LEVEL3_CRITICAL_PCT: float = 50.0
    HEALTH_LEVEL3_WARNING_PCT: float = 20.0

    # --- Maintenance ---
    ENTRY_RETENTION_DAYS: int = 90
    SUMMARY_RETENTION_DAYS: int = 30
    MAINTENANCE_BATCH_SIZE: int = 50
    MAINTENANCE_BATCH_PAUSE_SECONDS: float = 0.1
    # Summaries of users silent this long are dropped once they are older
    # than ORPHANED_SUMMARY_MIN_AGE_DAYS.
    INACTIVE_USER_DAYS: int = 30
    ORPHANED_SUMMARY_MIN_AGE_DAYS: int = 7
    USAGE_ALERT_TOTAL_ENTRIES: int = 100_000
    USAGE_ALERT_ACTIVE_USERS: int = 1000

    @property
    def cors_origins_list(self) -> list[str]:
        if self.CORS_ORIGINS.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def deferred_mode(self) -> bool:
        return self.ANALYSIS_MODE.strip().lower() == "deferred"


settings = Settings()
