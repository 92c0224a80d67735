"""
backend/kickoff/config.py

Purpose:
    Central settings loading for the pipeline. Every knob has a default so the
    package imports without secrets; the runtime builder reads these once and
    passes values into component constructors.

Dependencies:
    - pydantic-settings
    - pathlib
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Prefer backend/.env, fallback to project-root .env.
_BACKEND_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_ROOT_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB: str = "kickoff"
    STORE_BACKEND: str = "mongo"  # "mongo" | "memory"
    BACKEND_CORS_ORIGINS: str = "http://localhost:5173"
    LOG_LEVEL: str = "INFO"

    # Operator surface (empty disables the admin router with 503)
    ADMIN_API_KEY: str = ""

    # API-Football (fixtures, live state, lineups)
    API_FOOTBALL_BASE_URL: str = "https://v3.football.api-sports.io"
    API_FOOTBALL_KEY: str = ""
    API_FOOTBALL_RATE_LIMIT_RPM: int = 30
    API_FOOTBALL_TIMEOUT_SECONDS: float = 30.0
    API_FOOTBALL_MAX_RETRIES: int = 3
    API_FOOTBALL_RETRY_BASE_DELAY: float = 1.0
    FIXTURE_LEAGUE_IDS: str = "78,39,140,135,61"  # comma separated
    FIXTURE_SEASON: int = 2026
    FIXTURE_LOOKAHEAD_DAYS: int = 7

    # Odds (API-Football /odds, cached per fixture)
    ODDS_CACHE_TTL_SECONDS: int = 300

    # Prediction providers (OpenAI-compatible chat endpoints)
    LLM_BASE_URL: str = "https://api.synthetic.new/openai/v1"
    LLM_API_KEY: str = ""
    LLM_TIMEOUT_SECONDS: float = 20.0
    LLM_MODELS: str = (
        "deepseek-r1,deepseek-r1-0528-syn,kimi-k2-instruct,"
        "kimi-k2-thinking-syn,kimi-k2.5-syn"
    )
    # "primary:fallback" pairs, comma separated
    LLM_FALLBACKS: str = (
        "deepseek-r1-0528-syn:deepseek-r1,"
        "kimi-k2-thinking-syn:kimi-k2-instruct,"
        "kimi-k2.5-syn:kimi-k2-instruct"
    )
    FALLBACK_MAX_DEPTH: int = 3

    # Queue policy
    QUEUE_DEFAULT_MAX_ATTEMPTS: int = 5
    QUEUE_LEASE_SECONDS: float = 30.0
    QUEUE_JOB_TIMEOUT_SECONDS: float = 120.0
    QUEUE_POLL_INTERVAL_SECONDS: float = 1.0
    QUEUE_MAX_STALLS: int = 1
    QUEUE_COMPLETED_RETENTION_HOURS: int = 48
    CONCURRENCY_FIXTURES: int = 1
    CONCURRENCY_ANALYSIS: int = 1
    CONCURRENCY_ODDS: int = 2
    CONCURRENCY_LINEUPS: int = 2
    CONCURRENCY_PREDICTIONS: int = 1
    CONCURRENCY_LIVE: int = 10
    CONCURRENCY_SETTLEMENT: int = 3
    CONCURRENCY_BACKFILL: int = 1
    CONCURRENCY_MAINTENANCE: int = 1

    # Backoff
    BACKOFF_RATE_LIMIT_SECONDS: float = 60.0
    BACKOFF_TIMEOUT_STEP_SECONDS: float = 15.0
    BACKOFF_TIMEOUT_MAX_SECONDS: float = 120.0
    BACKOFF_BASE_SECONDS: float = 30.0
    BACKOFF_MAX_SECONDS: float = 600.0
    BACKOFF_JITTER: float = 0.2

    # Circuit breaker
    BREAKER_THRESHOLD: int = 5
    BREAKER_WINDOW_SECONDS: float = 60.0
    BREAKER_COOLDOWN_SECONDS: float = 60.0

    # Dead-letter sink
    DLQ_MAX_ENTRIES: int = 1000
    DLQ_ALERT_THRESHOLD: int = 50
    DLQ_TTL_DAYS: int = 30

    # Chain offsets (minutes before kickoff)
    CHAIN_ANALYZE_MINUTES: int = 360
    CHAIN_ODDS_MINUTES: str = "120,95,35,10"
    CHAIN_LINEUPS_MINUTES: int = 60
    CHAIN_PREDICT_MINUTES: int = 30
    CHAIN_LATE_DELAY_SECONDS: float = 1.0

    # Reconciliation windows (hours before kickoff)
    SWEEP_ANALYSIS_WINDOW_HOURS: int = 12
    SWEEP_ODDS_WINDOW_HOURS: int = 6
    SWEEP_LINEUPS_WINDOW_HOURS: int = 2
    SWEEP_PREDICTIONS_WINDOW_HOURS: int = 2
    SWEEP_SETTLEMENT_LOOKBACK_HOURS: int = 72
    SWEEP_STUCK_LOOKBACK_HOURS: int = 48

    # Live poller
    LIVE_POLL_INTERVAL_SECONDS: float = 60.0
    LIVE_MAX_POLLS: int = 150

    # Model health
    MODEL_DISABLE_THRESHOLD: int = 5
    MODEL_RECOVERY_COOLDOWN_MINUTES: int = 60
    MODEL_RECOVERY_RESET_TO: int = 2

    # Scoring
    QUOTA_MIN: int = 2
    QUOTA_MAX: int = 6
    GOAL_DIFF_BONUS: int = 1
    EXACT_SCORE_BONUS: int = 2
    SETTLEMENT_LOCK_SECONDS: float = 60.0
    SETTLEMENT_LOCK_WAIT_SECONDS: float = 10.0

    # Repeatable jobs
    FIXTURES_INTERVAL_HOURS: int = 6
    SWEEP_INTERVAL_MINUTES: int = 60
    STUCK_REPAIR_INTERVAL_MINUTES: int = 10
    MODEL_RECOVERY_INTERVAL_MINUTES: int = 30
    PRUNE_INTERVAL_MINUTES: int = 60

    # Hook bus
    EVENT_BUS_ENABLED: bool = True
    EVENT_BUS_QUEUE_SIZE: int = 1000
    EVENT_BUS_HANDLER_TIMEOUT_SECONDS: float = 10.0

    model_config = {
        "env_file": (str(_BACKEND_ENV_FILE), str(_ROOT_ENV_FILE)),
        "extra": "ignore",
    }


def split_csv(value: str) -> list[str]:
    return [part.strip() for part in str(value or "").split(",") if part.strip()]


settings = Settings()
