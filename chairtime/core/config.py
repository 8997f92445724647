from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env from backend project root (chairtime-backend/) so it loads regardless of cwd
_BACKEND_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _BACKEND_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(str(_ENV_FILE), ".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str
    database_ssl: bool = False

    # CORS
    cors_origins: str = "http://localhost:3000"

    # Shared bearer tokens for the scheduler and staff tools
    cron_secret: str = ""
    staff_api_token: str = ""

    # Slot/booking business rules
    slot_granularity_minutes: int = 15  # must divide 60
    min_lead_time_minutes: int = 60
    max_duration_minutes: int = 480
    default_timezone: str = "America/New_York"

    # Reminder windows: offset +/- tolerance around "now"
    reminder_run_interval_minutes: int = 30
    reminder_24h_offset_minutes: int = 24 * 60
    reminder_24h_tolerance_minutes: int = 60
    reminder_2h_offset_minutes: int = 120
    reminder_2h_tolerance_minutes: int = 30
    reminder_loop_enabled: bool = False
    notification_timeout_seconds: float = 10.0

    # Cancelled appointments are purged this many days after their last update
    cancelled_retention_days: int = 7

    # Env
    env: str = "development"

    # SMS (Twilio). Leave account sid empty to disable sending.
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    # Public URL the SMS provider calls back; used to verify webhook signatures
    public_base_url: str = ""

    # Email (SMTP). Leave smtp_host empty to disable sending.
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_email: str = ""
    from_name: str = "Chairtime"
    site_name: str = "Chairtime"

    @model_validator(mode="after")
    def _check_scheduling_policy(self) -> "Settings":
        if self.slot_granularity_minutes <= 0 or 60 % self.slot_granularity_minutes:
            raise ValueError("slot_granularity_minutes must divide 60")
        for kind, offset, tolerance in (
            ("24h", self.reminder_24h_offset_minutes, self.reminder_24h_tolerance_minutes),
            ("2h", self.reminder_2h_offset_minutes, self.reminder_2h_tolerance_minutes),
        ):
            if not 0 < tolerance < offset:
                raise ValueError(f"reminder_{kind}_tolerance_minutes must be between 0 and the offset")
            # A band narrower than the gap between runs lets appointments slip through unreminded
            if 2 * tolerance < self.reminder_run_interval_minutes:
                raise ValueError(
                    f"reminder {kind} band ({2 * tolerance} min) is narrower than "
                    f"reminder_run_interval_minutes ({self.reminder_run_interval_minutes} min)"
                )
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password and self.from_email)

    @property
    def sms_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)


settings = Settings()
