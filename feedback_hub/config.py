"""
Configuration system for the Feedback Hub job service.

Configuration priority (highest to lowest):
1. Environment variables (CLI or shell)
2. .env file
3. Defaults
"""

from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application configuration with environment variable support.

    All settings can be configured via environment variables with the same name.
    Example:
        JOB_STORE_BACKEND=redis REDIS_HOST=cache uvicorn feedback_hub.api.main:app
        WORKER_CONCURRENCY=4 python run_worker.py
    """

    # ============================================================
    # Server Configuration
    # ============================================================

    HOST: str = "0.0.0.0"
    PORT: int = 5000

    # Run the worker pool inside the API process. Disable when workers run
    # as separate processes (run_worker.py).
    RUN_WORKERS_IN_PROCESS: bool = True

    # ============================================================
    # Job Store (Redis broker)
    # ============================================================

    # "redis" for shared multi-process deployments, "memory" for a single process
    JOB_STORE_BACKEND: str = "memory"

    REDIS_HOST: str = "127.0.0.1"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: Optional[str] = None
    REDIS_DB: int = 0

    # Namespace for every key the job store and notification relay create
    JOB_KEY_PREFIX: str = "feedbackhub"

    # Finished (completed or failed) jobs the in-memory store keeps for polling
    JOB_MEMORY_MAX_FINISHED: int = 10000

    # ============================================================
    # Job Defaults
    # ============================================================

    JOB_DEFAULT_ATTEMPTS: int = 3

    # Base retry delay; exponential doubles it after every failed attempt
    JOB_DEFAULT_BACKOFF_MS: int = 1000
    JOB_DEFAULT_BACKOFF_TYPE: str = "exponential"

    # Validate payloads at enqueue time. When False, malformed payloads are
    # accepted and fail permanently in the worker.
    JOB_VALIDATE_ON_ENQUEUE: bool = True

    # ============================================================
    # Worker Pool
    # ============================================================

    # Consumers per lane
    WORKER_CONCURRENCY: int = 1

    # Sleep between empty polls
    WORKER_POLL_INTERVAL_S: float = 1.0

    # Lease on a claimed job; renewed by the worker every third of it.
    # A job whose lease expires is stalled and can be re-claimed.
    JOB_LEASE_SECONDS: float = 30.0

    # How often the stall reaper runs
    JOB_STALL_CHECK_INTERVAL_S: float = 30.0

    # Per-lane handler timeouts (seconds); lanes not listed use the default
    JOB_DEFAULT_TIMEOUT_SECONDS: float = 60.0
    JOB_LANE_TIMEOUTS: Dict[str, float] = {
        "send-email": 30.0,
        "notify-admin": 60.0,
        "notify-student": 10.0,
        "send-report": 120.0,
        "analytics": 300.0,
    }

    # ============================================================
    # Mail Transport
    # ============================================================

    # "smtp" sends for real, "console" logs messages instead
    MAIL_BACKEND: str = "smtp"

    SMTP_HOST: str = "smtp.mailtrap.io"
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM: str = '"Student Feedback App" <no-reply@feedbackapp.com>'
    SMTP_USE_TLS: bool = True
    SMTP_TIMEOUT_SECONDS: float = 20.0

    # Comma-separated admin recipients for notify-admin jobs
    ADMIN_NOTIFY_EMAILS: str = "admin1@example.com,admin2@example.com"

    @property
    def admin_notify_emails(self) -> List[str]:
        """Parsed admin recipient list."""
        return [email.strip() for email in self.ADMIN_NOTIFY_EMAILS.split(",") if email.strip()]

    # ============================================================
    # Notifications (real-time fanout)
    # ============================================================

    # "local" delivers in-process, "redis" relays through pub/sub so workers
    # in other processes can reach connections held by the API process
    NOTIFICATION_BACKEND: str = "local"

    # ============================================================
    # Audit
    # ============================================================

    # "file" appends JSON lines to AUDIT_LOG_PATH, "memory" keeps records in process
    AUDIT_BACKEND: str = "file"
    AUDIT_LOG_PATH: str = "./data/audit/audit.log"

    # ============================================================
    # Auth
    # ============================================================

    # Comma-separated API keys accepted on admin endpoints
    ADMIN_API_KEYS: str = ""

    # Revoked tokens are remembered for this long (matches token lifetime)
    TOKEN_TTL_SECONDS: int = 3600

    @property
    def admin_api_keys(self) -> List[str]:
        """Parsed admin API key list."""
        return [key.strip() for key in self.ADMIN_API_KEYS.split(",") if key.strip()]

    # ============================================================
    # CORS
    # ============================================================

    CORS_ENABLED: bool = False
    CLIENT_URL: str = "http://localhost:5173"

    # ============================================================
    # Logging
    # ============================================================

    LOG_LEVEL: str = "INFO"

    # Use JSON structured logging (better for production)
    LOG_JSON_FORMAT: bool = False

    # ============================================================
    # Development/Debug
    # ============================================================

    DEBUG: bool = False

    ENABLE_DOCS: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    def lane_timeout(self, lane: str) -> float:
        """Handler timeout for a lane, falling back to the default."""
        return self.JOB_LANE_TIMEOUTS.get(lane, self.JOB_DEFAULT_TIMEOUT_SECONDS)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Return the process settings, loading them on first use.

    Usage in FastAPI:
        from fastapi import Depends
        from feedback_hub.config import get_settings, Settings

        @app.get("/config")
        def show_config(settings: Settings = Depends(get_settings)):
            return {"backend": settings.JOB_STORE_BACKEND}
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def print_config_summary(settings: Optional[Settings] = None) -> None:
    """
    Print configuration summary for startup logging.

    This helps operators verify their configuration is correct.
    """
    settings = settings or get_settings()

    print("\n" + "=" * 60)
    print("Feedback Hub - Configuration Summary")
    print("=" * 60)

    print("\n🚀 Server:")
    print(f"   Host: {settings.HOST}")
    print(f"   Port: {settings.PORT}")
    print(f"   In-process workers: {settings.RUN_WORKERS_IN_PROCESS}")
    print(f"   Debug Mode: {settings.DEBUG}")

    print("\n📦 Job Store:")
    print(f"   Backend: {settings.JOB_STORE_BACKEND}")
    if settings.JOB_STORE_BACKEND == "redis":
        print(f"   Redis: {settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}")
    print(f"   Key prefix: {settings.JOB_KEY_PREFIX}")
    print(f"   Default attempts: {settings.JOB_DEFAULT_ATTEMPTS}")
    print(f"   Default backoff: {settings.JOB_DEFAULT_BACKOFF_TYPE} {settings.JOB_DEFAULT_BACKOFF_MS}ms")

    print("\n⚙️  Workers:")
    print(f"   Concurrency per lane: {settings.WORKER_CONCURRENCY}")
    print(f"   Lease: {settings.JOB_LEASE_SECONDS}s")

    print("\n✉️  Mail:")
    print(f"   Backend: {settings.MAIL_BACKEND}")
    print(f"   SMTP: {settings.SMTP_HOST}:{settings.SMTP_PORT}")
    print(f"   Admin recipients: {len(settings.admin_notify_emails)}")

    print("\n🔔 Notifications:")
    print(f"   Backend: {settings.NOTIFICATION_BACKEND}")

    print("\n📝 Audit:")
    print(f"   Backend: {settings.AUDIT_BACKEND}")
    if settings.AUDIT_BACKEND == "file":
        print(f"   Path: {settings.AUDIT_LOG_PATH}")

    print("\n📊 Logging:")
    print(f"   Level: {settings.LOG_LEVEL}")
    print(f"   Format: {'JSON' if settings.LOG_JSON_FORMAT else 'TEXT'}")

    print("\n" + "=" * 60 + "\n")


if __name__ == "__main__":
    print_config_summary()
