"""Configuration module for the Reminder Notification Service.

This module provides configuration settings using Pydantic Settings.
Environment variables can be used to override default values.
"""

from typing import List

from pydantic_settings import BaseSettings

# Notification engine constants (fixed, not read from the environment)
MAX_CALL_ATTEMPTS = 2
PROXIMITY_THRESHOLD_KM = 0.1
EARTH_RADIUS_KM = 6371.0
LOCATION_RETRIGGER_WINDOW = 5 * 60


class Settings(BaseSettings):
    """Application settings for the Reminder Notification Service.

    All settings can be overridden via environment variables.
    Example: export TWILIO_ACCOUNT_SID="AC..."
    """

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./reminders.db"
    """Database connection URL. Default: SQLite file in current directory"""

    # API Server Configuration
    API_HOST: str = "0.0.0.0"
    """API server host address"""

    API_PORT: int = 8005
    """API server port"""

    CORS_ORIGINS: List[str] = ["http://localhost:3000"]
    """Frontend origins allowed by CORS (JSON list in the environment)"""

    BASE_URL: str = "http://127.0.0.1:8005"
    """Public base URL, used to build the Twilio status callback URL"""

    # Scheduler Configuration
    WORKER_ENABLED: bool = True
    """Start both reminder loops when the API process starts"""

    TIME_CHECK_INTERVAL: int = 10
    """Interval in seconds between time-trigger checks"""

    LOCATION_CHECK_INTERVAL: int = 300
    """Interval in seconds between location-trigger checks"""

    # Voice Call Configuration
    CALL_RING_TIMEOUT: int = 30
    """Seconds the provider lets a call ring before giving up"""

    CALL_STATUS_POLL_DELAY: int = 35
    """Seconds after dispatch before the call status is polled"""

    CALL_RETRY_DELAY: int = 60
    """Seconds to wait before retrying an unanswered call"""

    # Twilio
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_API_URL: str = "https://api.twilio.com"

    # SendGrid
    SENDGRID_API_KEY: str = ""
    SENDGRID_API_URL: str = "https://api.sendgrid.com"
    EMAIL_FROM: str = "reminders@botie.app"
    EMAIL_FROM_NAME: str = "Botie"

    HTTP_TIMEOUT: float = 30.0
    """Timeout in seconds for outbound provider requests"""

    class Config:
        """Pydantic config"""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


# Global settings instance
settings = Settings()
