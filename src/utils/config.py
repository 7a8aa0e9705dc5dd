"""Runtime settings read from environment variables."""

import os
from typing import Optional
from pydantic import BaseModel, Field


class ReconciliationConfig(BaseModel):
    """Timing of the fill confirmation loop."""
    poll_interval_seconds: float = Field(default=2.0, gt=0, description="Delay before each confirmation poll")
    max_attempts: int = Field(default=6, ge=1, description="Confirmation polls before giving up")
    flag_ttl_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Seconds after dispatch at which an unconfirmed fill flag is cleared"
    )

    @classmethod
    def from_env(cls) -> "ReconciliationConfig":
        return cls(
            poll_interval_seconds=float(os.environ.get("RECONCILE_POLL_INTERVAL_SECONDS", "2")),
            max_attempts=int(os.environ.get("RECONCILE_MAX_ATTEMPTS", "6")),
            flag_ttl_seconds=float(os.environ.get("RECONCILE_FLAG_TTL_SECONDS", "30")),
        )


class GatewaySettings(BaseModel):
    """Connection settings for the farm visit REST service."""
    base_url: str = Field(default="http://localhost:3000/api", description="API root, '/api' appended when missing")
    token: Optional[str] = Field(None, description="Bearer token")
    timeout_seconds: float = Field(default=30.0, gt=0)

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        return cls(
            base_url=os.environ.get("FARMVISIT_API_URL", "http://localhost:3000/api"),
            token=os.environ.get("FARMVISIT_API_TOKEN") or None,
            timeout_seconds=float(os.environ.get("FARMVISIT_API_TIMEOUT_SECONDS", "30")),
        )

    def api_root(self) -> str:
        base = self.base_url.rstrip("/")
        if not base.endswith("/api"):
            base = f"{base}/api"
        return base


_reconciliation_config: Optional[ReconciliationConfig] = None


def get_reconciliation_config() -> ReconciliationConfig:
    """Get or create the process-wide reconciliation config."""
    global _reconciliation_config
    if _reconciliation_config is None:
        _reconciliation_config = ReconciliationConfig.from_env()
    return _reconciliation_config
