"""
Daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded device addresses, URLs, or credentials.

Thresholds are not part of these settings: they are owned by the settings
layer and read through a ThresholdProvider (optionally from the JSON file at
THRESHOLDS_PATH).

CHANGELOG:
- 2026-10-11: Add alert webhook settings (STORY-015)
- 2026-10-05: Initial creation (STORY-001)

TODO:
- None
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings


class MonitorSettings(BaseSettings):
    """Telemetry daemon configuration.

    Attributes:
        device_base_url: Breaker REST API base URL (http or https).
        device_poll_interval_s: Seconds between status polls (min 0.5).
        store_path: SQLite file for persisted history and events.
        thresholds_path: Optional JSON file with a ThresholdConfig; when
            empty the built-in defaults are used.
        alert_webhook_url: Optional HTTPS webhook for event alerts.
        alert_webhook_token: Optional bearer token for the webhook.
        rollup_check_interval_s: Seconds between hourly rollup checks.
        save_check_interval_s: Seconds between debounced save checks.
        health_path: JSON health file path.
    """

    device_base_url: str
    device_poll_interval_s: float = 1.0
    store_path: str = "/data/smartcb.db"
    thresholds_path: str = ""
    alert_webhook_url: str = ""
    alert_webhook_token: str = ""
    rollup_check_interval_s: float = 60.0
    save_check_interval_s: float = 300.0
    health_path: str = "/data/health.json"

    @field_validator("device_base_url")
    @classmethod
    def device_base_url_must_be_http(cls, v: str) -> str:
        """Validate that the device URL is an http(s) URL."""
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError(f"DEVICE_BASE_URL must start with http:// or https:// (got: '{v}')")
        return v

    @field_validator("alert_webhook_url")
    @classmethod
    def alert_webhook_url_must_be_https(cls, v: str) -> str:
        """Validate that the alert webhook, when set, uses HTTPS."""
        if v and not v.lower().startswith("https://"):
            raise ValueError("ALERT_WEBHOOK_URL must use HTTPS")
        return v

    @field_validator("device_poll_interval_s")
    @classmethod
    def poll_interval_must_be_reasonable(cls, v: float) -> float:
        """Validate poll interval does not hammer the device."""
        if v < 0.5:
            raise ValueError("DEVICE_POLL_INTERVAL_S must be >= 0.5")
        return v

    @field_validator("rollup_check_interval_s", "save_check_interval_s")
    @classmethod
    def check_interval_must_be_positive(cls, v: float) -> float:
        """Validate periodic check intervals are positive."""
        if v <= 0:
            raise ValueError("check intervals must be > 0")
        return v

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
