"""
Configuration management for the review sync core.

Sync behaviour (reconciliation, applier, logging) is configured through
typed dataclasses loaded from environment variables. The remote endpoint
is described by ConnectionSettings, loaded with pydantic-settings.

Invariants:
    - All settings have defaults suitable for local development
    - Secrets (anon key, access tokens) are never logged

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Keep env var names stable; deprecate by warning, not by removal
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileConfig:
    """Reconciliation scheduler configuration.

    Attributes:
        fallback_poll_seconds: Interval between full reloads while the change
            feed is degraded or closed (0 disables polling)
    """

    fallback_poll_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> ReconcileConfig:
        """Load configuration from environment variables."""
        return cls(
            fallback_poll_seconds=float(os.getenv("RECONCILE_FALLBACK_POLL_SECONDS", "30")),
        )


@dataclass(frozen=True)
class ApplierConfig:
    """Change event applier configuration.

    Attributes:
        count_step: Amount the profile count moves per insert/delete event
    """

    count_step: int = 1

    @classmethod
    def from_env(cls) -> ApplierConfig:
        """Load configuration from environment variables."""
        return cls(count_step=int(os.getenv("APPLIER_COUNT_STEP", "1")))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class SyncConfig:
    """Complete sync core configuration.

    Attributes:
        reconcile: Reconciliation scheduler configuration
        applier: Applier configuration
        observability: Logging configuration
    """

    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    applier: ApplierConfig = field(default_factory=ApplierConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If a setting is invalid.
        """
        config = cls(
            reconcile=ReconcileConfig.from_env(),
            applier=ApplierConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.reconcile.fallback_poll_seconds < 0:
            raise ValueError("RECONCILE_FALLBACK_POLL_SECONDS must be >= 0")
        if self.applier.count_step < 1:
            raise ValueError("APPLIER_COUNT_STEP must be >= 1")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Sync configuration loaded",
            extra={
                "fallback_poll_seconds": self.reconcile.fallback_poll_seconds,
                "count_step": self.applier.count_step,
                "log_level": self.observability.log_level,
            },
        )


class ConnectionSettings(BaseSettings):
    """Remote store endpoint loaded from ``SUPABASE_*`` environment variables."""

    url: str = Field(default="", description="Project base URL, e.g. https://x.supabase.co")
    anon_key: str = Field(default="", description="Public API key sent with every request")
    schema_name: str = Field(default="public", description="Database schema of the tables")

    request_timeout: float = Field(default=15.0, description="HTTP timeout seconds")
    realtime_heartbeat: float = Field(default=30.0, description="Feed heartbeat seconds")
    realtime_reconnect_max: float = Field(default=30.0, description="Max reconnect backoff")

    model_config = {"env_prefix": "SUPABASE_"}

    @property
    def rest_url(self) -> str:
        """Base URL of the REST (PostgREST) API."""
        return f"{self.url.rstrip('/')}/rest/v1"

    @property
    def realtime_url(self) -> str:
        """Websocket URL of the change feed."""
        base = self.url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/realtime/v1/websocket?apikey={self.anon_key}&vsn=1.0.0"
