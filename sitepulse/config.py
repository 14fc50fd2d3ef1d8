"""SitePulse — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Database ──
    database_url: str = ""

    # ── App ──
    log_level: str = "INFO"

    # ── Polling ──
    polling_enabled: bool = True
    poll_interval_hours: float = 4
    initial_poll_delay_seconds: int = 10  # Let dependent services stabilize
    snapshot_retention_days: int = 30

    # ── Platform HTTP ──
    http_timeout_seconds: float = 30.0
    health_check_timeout_seconds: float = 10.0
    adapter_timeout_seconds: float = 300.0  # Whole summary+tenants fetch per site
    verify_ssl: bool = True

    # ── Credential lifetimes ──
    vcd_session_ttl_minutes: int = 30
    proxmox_ticket_ttl_minutes: int = 120
    token_refresh_margin_seconds: int = 60

    # ── Unit assumptions (overridable per site) ──
    cloudstack_mhz_per_core: float = 1000.0
    proxmox_mhz_per_core: float = 2000.0
    report_vcpu_mhz: float = 2800.0  # vCPU-equivalent divisor in reports

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Read-only serverless filesystems only allow /tmp
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/sitepulse.db"
        return "sqlite:///./sitepulse.db"

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_hours * 3600

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
