"""
Environment-driven configuration

Values are read from the process environment (and a local .env file when
present) once at startup. Anything that fails to parse raises ValueError so a
misconfigured deployment never starts half-working.
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv
from limits import parse as parse_rate_limit


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{raw}'")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _get_int(name: str, default: int) -> int:
    return int(_get_float(name, default))


def _get_threshold(name: str, default: float) -> float:
    value = _get_float(name, default)
    if value > 1.0:
        raise ValueError(f"{name} must be between 0 and 1, got {value}")
    return value


def _get_rate_limit(name: str, default: str) -> str:
    raw = os.getenv(name, default).strip()
    try:
        parse_rate_limit(raw)
    except ValueError:
        raise ValueError(f"{name} must look like '100/15minutes', got '{raw}'")
    return raw


@dataclass
class Settings:
    """Runtime settings for the service"""

    # Identity provider
    provider_api_key_id: Optional[str] = None
    provider_api_key_value: Optional[str] = None
    provider_base_url: str = "https://id-uat.authid.ai"
    provider_web_url: str = "http://localhost:3002"
    provider_timeout_seconds: float = 5.0
    provider_min_confidence: float = 0.85
    provider_max_attempts: int = 3

    # Operation lifecycle
    operation_ttl_seconds: int = 300
    sweep_interval_seconds: int = 30
    poll_interval_seconds: int = 2
    max_poll_wait_seconds: int = 120

    # Proof policy
    face_match_threshold: float = 0.80
    confidence_threshold: float = 0.85

    # Tokens
    jwt_secret: Optional[str] = None
    jwt_private_key: Optional[str] = None
    jwt_public_key: Optional[str] = None
    jwt_expires_in: str = "1h"
    jwt_refresh_expires_in: str = "7d"
    jwt_issuer: str = "bioauth-service"
    jwt_audience: str = "bioauth-api"

    # Application
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = "INFO"
    identity_seed_file: Optional[str] = None
    auth_rate_limit: str = "100/15minutes"
    host: str = "0.0.0.0"
    port: int = 8000


def load_settings() -> Settings:
    """Build Settings from the environment."""
    load_dotenv()

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ValueError(f"LOG_LEVEL must be a standard logging level, got '{log_level}'")

    return Settings(
        provider_api_key_id=os.getenv("AUTHID_API_KEY_ID"),
        provider_api_key_value=os.getenv("AUTHID_API_KEY_VALUE"),
        provider_base_url=os.getenv("AUTHID_BASE_URL", "https://id-uat.authid.ai").rstrip("/"),
        provider_web_url=os.getenv("AUTHID_WEB_URL", "http://localhost:3002").rstrip("/"),
        provider_timeout_seconds=_get_float("PROVIDER_TIMEOUT_SECONDS", 5.0),
        provider_min_confidence=_get_threshold("PROVIDER_MIN_CONFIDENCE", 0.85),
        provider_max_attempts=_get_int("PROVIDER_MAX_ATTEMPTS", 3),
        operation_ttl_seconds=_get_int("OPERATION_TTL_SECONDS", 300),
        sweep_interval_seconds=_get_int("SWEEP_INTERVAL_SECONDS", 30),
        poll_interval_seconds=_get_int("POLL_INTERVAL_SECONDS", 2),
        max_poll_wait_seconds=_get_int("MAX_POLL_WAIT_SECONDS", 120),
        face_match_threshold=_get_threshold("FACE_MATCH_THRESHOLD", 0.80),
        confidence_threshold=_get_threshold("CONFIDENCE_THRESHOLD", 0.85),
        jwt_secret=os.getenv("JWT_SECRET"),
        jwt_private_key=os.getenv("JWT_PRIVATE_KEY"),
        jwt_public_key=os.getenv("JWT_PUBLIC_KEY"),
        jwt_expires_in=os.getenv("JWT_EXPIRES_IN", "1h"),
        jwt_refresh_expires_in=os.getenv("JWT_REFRESH_EXPIRES_IN", "7d"),
        jwt_issuer=os.getenv("JWT_ISSUER", "bioauth-service"),
        jwt_audience=os.getenv("JWT_AUDIENCE", "bioauth-api"),
        cors_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()],
        log_level=log_level,
        identity_seed_file=os.getenv("IDENTITY_SEED_FILE"),
        auth_rate_limit=_get_rate_limit("AUTH_RATE_LIMIT", "100/15minutes"),
        host=os.getenv("HOST", "0.0.0.0"),
        port=_get_int("PORT", 8000),
    )
