"""
HDS Configuration: compartment and session defaults.

Values are read from environment variables once at import time:
    HDS_CLEANUP_INTERVAL = <minutes a compartment lives, default 30>
    HDS_SWEEP_INTERVAL = <minutes between periodic sweeps, default 10>
    HDS_SESSION_EXPIRY = <minutes before a remote session record expires, default 30>
    HDS_SCRUB_PREFIXES = <comma separated storage key prefixes, default "temp-,demo-">
    HDS_SESSION_MARKER_PREFIX = <storage key prefix of session markers>
    HDS_MIRROR_SESSION_DATA = <true/false, mirror collections to storage>
"""
import os

from pydantic import BaseModel, Field, field_validator


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


DEFAULT_CLEANUP_INTERVAL = int(os.environ.get("HDS_CLEANUP_INTERVAL", 30))
DEFAULT_SWEEP_INTERVAL = int(os.environ.get("HDS_SWEEP_INTERVAL", 10))
DEFAULT_SESSION_EXPIRY = int(os.environ.get("HDS_SESSION_EXPIRY", 30))
SCRUB_PREFIXES = _env_list("HDS_SCRUB_PREFIXES", "temp-,demo-")
SESSION_MARKER_PREFIX = os.environ.get(
    "HDS_SESSION_MARKER_PREFIX", "demo-session-"
)
MIRROR_SESSION_DATA = _env_bool("HDS_MIRROR_SESSION_DATA")

# stamps injected into every record held by a compartment
COMPARTMENT_TIMESTAMP = "_compartment_timestamp"
COMPARTMENT_ID = "_compartment_id"

# scoped storage keys: "{compartment_id}:{entity}", "{prefix}{session_id}"
# or "{prefix}{session_id}:{suffix}"; ids never contain the separator.
KEY_SEPARATOR = ":"
ID_PATTERN = r"^[^:]+$"


class HDSSettings(BaseModel):
    """Validated compartment/session settings."""

    cleanup_interval: int = Field(default=DEFAULT_CLEANUP_INTERVAL, ge=1)
    sweep_interval: int = Field(default=DEFAULT_SWEEP_INTERVAL, ge=1)
    session_expiry: int = Field(default=DEFAULT_SESSION_EXPIRY, ge=1)
    scrub_prefixes: list[str] = Field(
        default_factory=lambda: list(SCRUB_PREFIXES)
    )
    session_marker_prefix: str = SESSION_MARKER_PREFIX
    mirror_session_data: bool = MIRROR_SESSION_DATA

    @field_validator("scrub_prefixes")
    @classmethod
    def validate_prefixes(cls, v: list[str]) -> list[str]:
        """An empty prefix would match every key in storage."""
        if any(not prefix for prefix in v):
            raise ValueError("Scrub prefixes cannot be empty strings")
        return v

    @field_validator("session_marker_prefix")
    @classmethod
    def validate_marker_prefix(cls, v: str) -> str:
        if not v:
            raise ValueError("Session marker prefix cannot be empty")
        return v

    @classmethod
    def from_env(cls) -> "HDSSettings":
        """Create HDSSettings by re-reading the environment.

        Returns:
            Populated HDSSettings instance.
        """
        return cls(
            cleanup_interval=int(
                os.environ.get("HDS_CLEANUP_INTERVAL", DEFAULT_CLEANUP_INTERVAL)
            ),
            sweep_interval=int(
                os.environ.get("HDS_SWEEP_INTERVAL", DEFAULT_SWEEP_INTERVAL)
            ),
            session_expiry=int(
                os.environ.get("HDS_SESSION_EXPIRY", DEFAULT_SESSION_EXPIRY)
            ),
            scrub_prefixes=_env_list("HDS_SCRUB_PREFIXES", "temp-,demo-"),
            session_marker_prefix=os.environ.get(
                "HDS_SESSION_MARKER_PREFIX", SESSION_MARKER_PREFIX
            ),
            mirror_session_data=_env_bool("HDS_MIRROR_SESSION_DATA"),
        )
