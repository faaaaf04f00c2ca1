"""Central environment-driven settings for the fulfillment service.

The process loads this once at startup. Mail transport, session cookies and
store connections are all controlled by environment variables (see
`.env.example`).
"""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "after-payment"
    log_level: str = "INFO"
    postgres_dsn: str = "sqlite+pysqlite:///./payments.db"
    db_timeout_seconds: int = 5
    redis_url: str | None = None
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    cors_origins: list[str] = ["http://localhost:5173"]

    # Mail relay. Either username/password or the oauth_* trio, never both.
    mail_host: str = "smtp.gmail.com"
    mail_port: int = 587
    mail_start_tls: bool = True
    mail_timeout_seconds: float = 15.0
    mail_username: str = ""
    mail_password: str = ""
    mail_sender_name: str = "Trip Bookings"
    mail_sender_address: str = ""

    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    oauth_refresh_token: str = ""
    oauth_token_url: str = "https://oauth2.googleapis.com/token"
    oauth_expiry_skew_seconds: int = 60
    oauth_timeout_seconds: float = 10.0

    session_ttl_seconds: int = 1800
    session_cookie_name: str = "session"
    session_cookie_domain: str | None = None
    session_cookie_secure: bool = True
    session_cookie_samesite: Literal["lax", "strict", "none"] = "none"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
