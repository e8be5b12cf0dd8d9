"""Explicit configuration for the IntakeFlow engine and its services.

``Settings`` is a frozen object built once at start-up and passed into the
interpreter, scheduler and conversation service.  Nothing in the package reads
the environment after that point.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/intakeflow/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 (lazy import)

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/intakeflow/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_secret(name: str) -> str | None:
    """Return a secret from env-var or SSM, or ``None`` when unset."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if os.getenv("AWS_EXECUTION_ENV"):
        return _get_ssm_parameter(name)
    return None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Every tunable the engine and its services consume."""

    # ── Flows ────────────────────────────────────────────────────────
    flows_dir: Path = Path("flows")
    require_reachable_nodes: bool = False
    max_retries: int = 2

    # ── Field extraction (LLM) ───────────────────────────────────────
    anthropic_api_key: str | None = None
    extraction_model: str = "claude-haiku-4-5"
    extraction_timeout_seconds: float = 8.0

    # ── Scheduling ───────────────────────────────────────────────────
    timezone: str = "America/New_York"
    slot_window_days: int = 7
    max_slots_offered: int = 3
    hold_ttl_minutes: int = 15

    # ── Handoff ──────────────────────────────────────────────────────
    click_to_call_ttl_minutes: int = 10
    public_base_url: str = "http://localhost:8000"

    # ── Persistence / downstream ─────────────────────────────────────
    database_path: str | None = None
    record_sink_url: str | None = None
    record_sink_token: str | None = None

    # ── Observability ────────────────────────────────────────────────
    metrics_enabled: bool = False

    # ── Server ───────────────────────────────────────────────────────
    server_host: str = "0.0.0.0"
    server_port: int = 8000
    cors_origins: tuple[str, ...] = field(
        default=("http://localhost:3000", "http://localhost:5173"),
    )

    @property
    def extraction_enabled(self) -> bool:
        return bool(self.anthropic_api_key)

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from ``.env``, the process environment and SSM."""
        load_dotenv()
        return cls(
            flows_dir=Path(os.getenv("FLOWS_DIR", "flows")),
            require_reachable_nodes=_env_bool("REQUIRE_REACHABLE_NODES", False),
            max_retries=int(os.getenv("MAX_RETRIES", "2")),
            anthropic_api_key=_optional_secret("ANTHROPIC_API_KEY"),
            extraction_model=os.getenv("EXTRACTION_MODEL", "claude-haiku-4-5"),
            extraction_timeout_seconds=float(os.getenv("EXTRACTION_TIMEOUT_SECONDS", "8")),
            timezone=os.getenv("BUSINESS_TIMEZONE", "America/New_York"),
            slot_window_days=int(os.getenv("SLOT_WINDOW_DAYS", "7")),
            max_slots_offered=int(os.getenv("MAX_SLOTS_OFFERED", "3")),
            hold_ttl_minutes=int(os.getenv("HOLD_TTL_MINUTES", "15")),
            click_to_call_ttl_minutes=int(os.getenv("CLICK_TO_CALL_TTL_MINUTES", "10")),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
            database_path=os.getenv("DATABASE_PATH") or None,
            record_sink_url=os.getenv("RECORD_SINK_URL") or None,
            record_sink_token=_optional_secret("RECORD_SINK_TOKEN"),
            metrics_enabled=_env_bool("METRICS_ENABLED", False),
            server_host=os.getenv("SERVER_HOST", "0.0.0.0"),
            server_port=int(os.getenv("SERVER_PORT", "8000")),
            cors_origins=tuple(
                os.getenv(
                    "CORS_ORIGINS",
                    "http://localhost:3000,http://localhost:5173",
                ).split(",")
            ),
        )
