# wamux/config.py
import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional, Union

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def configure_logging(level: Optional[str] = None) -> None:
    """
    Install a single stream handler on the root logger.

    Safe to call more than once; the handler is only added the first time.

    Args:
        level: Log level name. Defaults to WAMUX_LOG_LEVEL or INFO.
    """
    level = (level or os.getenv("WAMUX_LOG_LEVEL", "INFO")).upper()
    if level not in VALID_LOG_LEVELS:
        level = "INFO"

    root = logging.getLogger()
    if not any(getattr(h, "_wamux_handler", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._wamux_handler = True
        root.addHandler(handler)
    root.setLevel(level)


def _env_number(
    name: str,
    default: Union[int, float],
    minimum: Union[int, float],
    maximum: Union[int, float],
    cast=int,
) -> Union[int, float]:
    """
    Read a numeric environment variable with range validation.

    Invalid values fall back to the default, out-of-range values are clamped.
    """
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except (ValueError, TypeError):
        logger.warning(f"Invalid {name} value '{raw}', using default {default}")
        return default
    if value < minimum:
        logger.warning(f"{name} too small, using minimum {minimum}")
        return minimum
    if value > maximum:
        logger.warning(f"{name} too large, capped at {maximum}")
        return maximum
    return value


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value or default


@dataclass
class Settings:
    """Runtime settings for every wamux component."""

    default_country_code: str = "91"
    routing_suffix: str = "@c.us"
    queue_cap: int = 20
    phone_cache_size: int = 1000
    secret_cache_ttl: float = 300.0
    secret_cache_clear_interval: float = 3600.0
    secret_cache_max_entries: int = 10000
    webhook_list_ttl: float = 60.0
    webhook_list_max_entries: int = 10000
    automation_timeout: float = 5.0
    default_timeout: float = 10.0
    log_batch_size: int = 10
    log_flush_interval: float = 5.0
    max_media_bytes: int = 16 * 1024 * 1024
    database_url: Optional[str] = None
    transport_factory: Optional[str] = None
    api_token: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (after .env is loaded)."""
        country_code = _env_str("WAMUX_DEFAULT_COUNTRY_CODE", "91")
        if not country_code.isdigit():
            logger.warning(
                f"WAMUX_DEFAULT_COUNTRY_CODE must be digits only, got '{country_code}'. Using 91"
            )
            country_code = "91"

        return cls(
            default_country_code=country_code,
            routing_suffix=_env_str("WAMUX_ROUTING_SUFFIX", "@c.us"),
            queue_cap=_env_number("WAMUX_QUEUE_CAP", 20, 1, 10000),
            phone_cache_size=_env_number("WAMUX_PHONE_CACHE_SIZE", 1000, 1, 1000000),
            secret_cache_ttl=_env_number(
                "WAMUX_SECRET_CACHE_TTL_SECONDS", 300.0, 1.0, 86400.0, float
            ),
            secret_cache_clear_interval=_env_number(
                "WAMUX_SECRET_CACHE_CLEAR_INTERVAL_SECONDS", 3600.0, 1.0, 86400.0, float
            ),
            secret_cache_max_entries=_env_number(
                "WAMUX_SECRET_CACHE_MAX_ENTRIES", 10000, 1, 10000000
            ),
            webhook_list_ttl=_env_number(
                "WAMUX_WEBHOOK_LIST_TTL_SECONDS", 60.0, 0.0, 3600.0, float
            ),
            webhook_list_max_entries=_env_number(
                "WAMUX_WEBHOOK_LIST_MAX_ENTRIES", 10000, 1, 10000000
            ),
            automation_timeout=_env_number(
                "WAMUX_AUTOMATION_TIMEOUT_SECONDS", 5.0, 0.1, 300.0, float
            ),
            default_timeout=_env_number(
                "WAMUX_DEFAULT_TIMEOUT_SECONDS", 10.0, 0.1, 300.0, float
            ),
            log_batch_size=_env_number("WAMUX_LOG_BATCH_SIZE", 10, 1, 10000),
            log_flush_interval=_env_number(
                "WAMUX_LOG_FLUSH_INTERVAL_SECONDS", 5.0, 0.1, 3600.0, float
            ),
            max_media_bytes=_env_number(
                "WAMUX_MAX_MEDIA_BYTES", 16 * 1024 * 1024, 1, 100 * 1024 * 1024
            ),
            database_url=_env_str("WAMUX_DATABASE_URL"),
            transport_factory=_env_str("WAMUX_TRANSPORT_FACTORY"),
            api_token=_env_str("WAMUX_API_TOKEN"),
            host=_env_str("HOST", "0.0.0.0"),
            port=_env_number("PORT", 8000, 1, 65535),
        )
