"""
Core Settings
=============
Process-level configuration read from the environment.

Per-organization security settings live in casework_core.security.config.
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


@dataclass
class CoreSettings:
    """Settings for the audit and access-risk engine."""
    service_name: str = field(
        default_factory=lambda: os.environ.get("SERVICE_NAME", "casework-core")
    )
    database_url: Optional[str] = field(
        default_factory=lambda: os.environ.get("DATABASE_URL") or None
    )
    redis_url: Optional[str] = field(
        default_factory=lambda: os.environ.get("REDIS_URL") or None
    )
    log_level: str = field(
        default_factory=lambda: os.environ.get("LOG_LEVEL", "INFO")
    )
    log_json: bool = field(
        default_factory=lambda: _env_bool("LOG_JSON", "true")
    )

    # Audit writes
    audit_write_max_attempts: int = field(
        default_factory=lambda: int(os.environ.get("AUDIT_WRITE_MAX_ATTEMPTS", "3"))
    )
    audit_write_base_delay: float = field(
        default_factory=lambda: float(os.environ.get("AUDIT_WRITE_BASE_DELAY", "0.05"))
    )
    audit_write_max_delay: float = field(
        default_factory=lambda: float(os.environ.get("AUDIT_WRITE_MAX_DELAY", "2.0"))
    )
    audit_max_details_bytes: int = field(
        default_factory=lambda: int(os.environ.get("AUDIT_MAX_DETAILS_BYTES", "10000"))
    )

    # Chain verification
    audit_verify_chunk_size: int = field(
        default_factory=lambda: int(os.environ.get("AUDIT_VERIFY_CHUNK_SIZE", "500"))
    )
    audit_verify_timeout_seconds: Optional[float] = field(
        default_factory=lambda: (
            float(os.environ["AUDIT_VERIFY_TIMEOUT_SECONDS"])
            if os.environ.get("AUDIT_VERIFY_TIMEOUT_SECONDS") else None
        )
    )

    # Risk engine
    security_event_id_ttl_seconds: int = field(
        default_factory=lambda: int(os.environ.get("SECURITY_EVENT_ID_TTL_SECONDS", "3600"))
    )


@lru_cache(maxsize=1)
def get_settings() -> CoreSettings:
    """Cached settings instance for the current process."""
    return CoreSettings()
