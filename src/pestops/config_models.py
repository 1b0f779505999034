"""Pydantic models for application configuration.

Configuration priority (lowest to highest):
1. Code defaults (defined in model Field defaults)
2. defaults.yaml shipped with the package
3. config.yaml file
4. Environment variables
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ServerConfig(BaseModel):
    """HTTP server binding."""

    model_config = ConfigDict(extra="forbid")

    host: str = "0.0.0.0"
    port: int = 8000


class WorkflowConfig(BaseModel):
    """Retry and timeout policy for workflow action execution."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)
    action_timeout_seconds: float = Field(default=30.0, gt=0)
    # Business timezone used for time-of-day conditions
    timezone: str = "America/Los_Angeles"
    bootstrap_default_triggers: bool = True
    # Owner of the QuickBooks/Google connections that actions use; when unset
    # the event actor's own connection is used
    integration_user_id: str | None = None


class BusinessHoursConfig(BaseModel):
    """Window in which business-hours-only sync jobs may fire."""

    model_config = ConfigDict(extra="forbid")

    start_hour: int = Field(default=7, ge=0, le=23)
    end_hour: int = Field(default=19, ge=0, le=23)
    # Monday is 0
    weekdays: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])


class SyncJobConfig(BaseModel):
    """Schedule for a single named sync job."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    interval_seconds: float = Field(default=900.0, gt=0)
    business_hours_only: bool = False


class SchedulerConfig(BaseModel):
    """Sync scheduler configuration."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    history_limit: int = 200
    business_hours: BusinessHoursConfig = Field(default_factory=BusinessHoursConfig)
    jobs: dict[str, SyncJobConfig] = Field(
        default_factory=lambda: {
            "quickbooks": SyncJobConfig(interval_seconds=900, business_hours_only=True),
            "google_calendar": SyncJobConfig(interval_seconds=600),
        }
    )


class TokenConfig(BaseModel):
    """Token refresh policy."""

    model_config = ConfigDict(extra="forbid")

    refresh_margin_seconds: float = 300.0
    max_refresh_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=10.0, ge=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)


class QuickBooksConfig(BaseModel):
    """QuickBooks Online OAuth application settings."""

    model_config = ConfigDict(extra="forbid")

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None
    environment: Literal["production", "sandbox"] = "production"
    scopes: list[str] = Field(
        default_factory=lambda: ["com.intuit.quickbooks.accounting"]
    )
    minor_version: int = 65
    # Signs change notifications; deliveries are refused while unset
    webhook_verifier_token: str | None = None

    @property
    def api_base_url(self) -> str:
        if self.environment == "sandbox":
            return "https://sandbox-quickbooks.api.intuit.com/v3"
        return "https://quickbooks.api.intuit.com/v3"


class GoogleConfig(BaseModel):
    """Google OAuth application settings for Calendar access."""

    model_config = ConfigDict(extra="forbid")

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None
    scopes: list[str] = Field(
        default_factory=lambda: ["https://www.googleapis.com/auth/calendar"]
    )


class EmailConfig(BaseModel):
    """Transactional mail API settings (SendGrid v3 compatible)."""

    model_config = ConfigDict(extra="forbid")

    api_key: str | None = None
    api_url: str = "https://api.sendgrid.com/v3/mail/send"
    from_address: str = "noreply@marinpestcontrol.com"


class AppConfig(BaseModel):
    """Main application configuration.

    This is the root configuration model that contains all application settings.
    """

    model_config = ConfigDict(extra="forbid")

    database_url: str = "sqlite+aiosqlite:///pestops.db"
    # Fernet key used to encrypt OAuth tokens at rest
    token_encryption_key: str | None = None
    public_base_url: str = "http://localhost:8000"
    dev_mode: bool = False

    server: ServerConfig = Field(default_factory=ServerConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    tokens: TokenConfig = Field(default_factory=TokenConfig)
    quickbooks: QuickBooksConfig = Field(default_factory=QuickBooksConfig)
    google: GoogleConfig = Field(default_factory=GoogleConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
