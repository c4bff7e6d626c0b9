"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Matching thresholds, circuit
breaker budgets and collaborator URLs are all controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    # Ingestion
    sms_webhook_token: str = ""
    default_currency: str = "RWF"

    # Matching policy
    auto_settle_threshold: float = 0.70
    plausible_confidence_floor: float = 0.35
    match_lookback_seconds: int = 300
    match_clock_skew_seconds: int = 60
    match_candidate_ordering: str = "created_at"
    reference_match_policy: str = "exact"
    reference_similarity_threshold: float = 0.80

    # Parser / external classifier
    classifier_url: str = ""
    classifier_api_key: str = ""
    classifier_timeout_ms: int = 3000
    classifier_failure_threshold: int = 3
    classifier_reset_ms: int = 30_000
    classifier_only_confidence_cap: float = 0.85
    degraded_confidence_penalty: float = 0.15

    # Outbound supporter notifications
    notifier_url: str = ""
    notifier_api_key: str = ""
    notifier_timeout_ms: int = 2000
    notifier_failure_threshold: int = 5
    notifier_reset_ms: int = 60_000

    # Admin gate + review queue
    admin_session_url: str = "http://admin-auth:8080/sessions/introspect"
    manual_review_default_limit: int = 50
    manual_review_max_limit: int = 200
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
