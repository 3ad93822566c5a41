"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the fleet
orchestration backend. All settings can be overridden via environment
variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TIER_LIMITS: dict[str, int] = {
    "observer": 0,
    "participant": 0,
    "builder": 1,
    "architect": 3,
    "sovereign": 10,
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        database_path: SQLite file holding the fleet tables and the outbox.
        monitor_interval_ms: Interval between monitor cycles.
        monitor_cycle_deadline_ms: Cycle duration that triggers a warning.
        monitor_stall_threshold_sec: Seconds without a commit before a
            running agent is reported as stalled.
        monitor_timeout_minutes: Minutes since spawn before a task times out.
        outbox_poll_interval_ms: Interval between outbox batches.
        outbox_batch_size: Maximum entries claimed per batch.
        outbox_max_retries: Delivery attempts before an entry is dead-lettered.
        outbox_claim_lease_seconds: How long a claimed entry stays hidden
            from other workers.
        event_subject_prefix: Subject prefix for the external message bus.
        gh_binary: Executable used for source-control queries.
        gh_timeout_seconds: Timeout for a single CLI invocation.
        agent_image: Docker image for container-mode agents.
        worktree_base_dir: Directory every agent worktree must live under.
        tier_limits: Concurrent agent limit per conviction tier.
        backend_port: Port for the health API.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Persistence
    database_path: str = "./data/fleet.db"

    # Monitor
    monitor_interval_ms: int = 30_000
    monitor_cycle_deadline_ms: int = 25_000
    monitor_stall_threshold_sec: int = 1800
    monitor_timeout_minutes: int = 120

    # Outbox
    outbox_poll_interval_ms: int = 5000
    outbox_batch_size: int = 10
    outbox_max_retries: int = 5
    outbox_claim_lease_seconds: int = 60

    # Event distribution
    event_subject_prefix: str = "dixie.fleet"

    # Source control
    gh_binary: str = "gh"
    gh_timeout_seconds: int = 30

    # Agent lifecycle
    agent_image: str = "fleet-agent:latest"
    worktree_base_dir: str = "./worktrees"

    # Admission
    tier_limits: str | dict[str, int] = dict(DEFAULT_TIER_LIMITS)

    # Server Configuration
    backend_port: int = 8000
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("tier_limits", mode="before")
    @classmethod
    def parse_tier_limits(cls, v: Any) -> dict[str, int]:
        """Parse tier limits from a JSON object or ``tier=limit`` pairs.

        Accepts:
        - JSON object: '{"builder": 2, "architect": 5}'
        - Comma-separated pairs: 'builder=2,architect=5'
        - Already a dict

        Tiers that are not mentioned keep their default limit.
        """
        limits = dict(DEFAULT_TIER_LIMITS)
        if isinstance(v, dict):
            limits.update({str(k): int(val) for k, val in v.items()})
            return limits
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("{"):
                try:
                    parsed = json.loads(v)
                    limits.update({str(k): int(val) for k, val in parsed.items()})
                    return limits
                except (json.JSONDecodeError, ValueError):
                    pass
            for pair in v.split(","):
                if "=" not in pair:
                    continue
                tier, _, raw = pair.partition("=")
                limits[tier.strip()] = int(raw.strip())
        return limits

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
