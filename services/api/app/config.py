"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Database (TiDB / MySQL-protocol compatible) ────────────────────────
    tidb_host: str = "tidb"
    tidb_port: int = 4000
    tidb_user: str = "root"
    tidb_password: str = ""
    tidb_database: str = "edufeed"
    # Full SQLAlchemy URL override, e.g. sqlite+aiosqlite:///./dev.db
    database_url: str = ""

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+aiomysql://{self.tidb_user}:{self.tidb_password}"
            f"@{self.tidb_host}:{self.tidb_port}/{self.tidb_database}"
        )

    # ── Redis ──────────────────────────────────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_vector_ttl: int = 4 * 60 * 60     # fallback when activity is unknown
    feed_cache_pages: int = 5               # feed:{user_id}:{1..N}
    session_ttl: int = 7 * 24 * 60 * 60

    # ── Drift detection ────────────────────────────────────────────────────
    drift_similarity_threshold: float = 0.6  # cosine below this = drift
    drift_subject_change: float = 0.2        # per-subject change to report
    drift_recent_days: int = 30
    drift_history_days: int = 90
    vector_max_subjects: int = 50

    # ── Staggered invalidation ─────────────────────────────────────────────
    invalidation_batch_size: int = 100
    invalidation_delay_ms: int = 500
    soft_invalidation_ttl: int = 60
    interest_lookback_days: int = 30

    # ── Maintenance jobs ───────────────────────────────────────────────────
    interaction_retention_days: int = 90
    active_user_days: int = 7
    similar_users_retention_days: int = 30
    cron_secret: str = ""

    # ── Health thresholds ──────────────────────────────────────────────────
    alert_avg_calculation_ms: float = 500.0
    alert_min_cache_hit_rate: float = 0.7
    alert_max_drift_rate: float = 0.2
    alert_max_stampedes: int = 10
    alert_min_diversity: float = 0.3
    alert_max_error_rate: float = 0.05
    stampede_waiter_limit: int = 10

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    otel_enabled: bool = True
    service_name: str = "feed-algorithm"
    environment: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
