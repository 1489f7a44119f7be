"""
Centralized configuration with environment variable overrides.

Bot behaviour, scheduling windows, persistence paths, and server settings
are all configurable here. Components receive the relevant section through
their constructors and default to the ``settings`` singleton.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from citabot.logging_context import configure_logging

load_dotenv()

logger = logging.getLogger(__name__)

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


def _safe_bool(env_var: str, default: str) -> bool:
    return os.getenv(env_var, default).strip().lower() in ("true", "1", "yes")


# Python weekday (0 = Monday) -> daily start times
_DEFAULT_WEEKLY_TEMPLATE: dict[int, tuple[str, ...]] = {
    0: ("09:00", "11:00", "13:00", "15:00", "17:00"),
    1: ("09:00", "11:00", "13:00", "15:00", "17:00"),
    2: ("09:00", "11:00", "13:00", "15:00", "17:00"),
    3: ("09:00", "11:00", "13:00", "15:00", "17:00"),
    4: ("09:00", "11:00", "13:00", "15:00"),
    5: ("09:00", "11:00", "13:00"),
}


@dataclass(frozen=True)
class BotConfig:
    """Conversation behaviour settings."""

    name: str = os.getenv("BOT_NAME", "AssistBot CLARITY")
    version: str = os.getenv("BOT_VERSION", "2.0.0")
    supported_languages: tuple[str, ...] = ("es", "de", "en")
    default_language: str = os.getenv("DEFAULT_LANGUAGE", "es")
    session_timeout_seconds: int = _safe_int("SESSION_TIMEOUT_SECONDS", "1800")
    max_retries: int = _safe_int("MAX_RETRIES", "3")


@dataclass(frozen=True)
class SchedulingConfig:
    """Availability template and booking window."""

    timezone: str = os.getenv("TIMEZONE", "Europe/Berlin")
    slot_duration_minutes: int = _safe_int("SLOT_DURATION_MINUTES", "120")
    advance_booking_days: int = _safe_int("ADVANCE_BOOKING_DAYS", "14")
    min_advance_hours: float = _safe_float("MIN_ADVANCE_HOURS", "24")
    session_slot_limit: int = _safe_int("SESSION_SLOT_LIMIT", "10")
    listing_slot_limit: int = _safe_int("LISTING_SLOT_LIMIT", "20")
    weekly_template: dict[int, tuple[str, ...]] = field(
        default_factory=lambda: dict(_DEFAULT_WEEKLY_TEMPLATE)
    )

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class DataConfig:
    """Workbook persistence and backup settings."""

    workbook_path: str = os.getenv("DATA_WORKBOOK_PATH", "./data/appointments.xlsx")
    backup_enabled: bool = _safe_bool("BACKUP_ENABLED", "true")
    backup_interval_seconds: float = _safe_float("BACKUP_INTERVAL_SECONDS", "3600")


@dataclass(frozen=True)
class ServerConfig:
    """HTTP/WebSocket façade settings."""

    host: str = os.getenv("HOST", "localhost")
    port: int = _safe_int("PORT", "3000")
    cors_origin: str = os.getenv("CORS_ORIGIN", "*")
    stats_broadcast_seconds: float = _safe_float("STATS_BROADCAST_SECONDS", "30")
    expiry_sweep_seconds: float = _safe_float("EXPIRY_SWEEP_SECONDS", "900")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    bot: BotConfig = field(default_factory=BotConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    data: DataConfig = field(default_factory=DataConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    company_name: str = os.getenv("COMPANY_NAME", "CLARITY")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


def _validate_scheduling(scheduling: SchedulingConfig) -> None:
    try:
        ZoneInfo(scheduling.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"TIMEZONE is not a known timezone: {scheduling.timezone!r}") from None

    if scheduling.slot_duration_minutes < 1:
        raise ValueError(
            f"SLOT_DURATION_MINUTES must be >= 1, got {scheduling.slot_duration_minutes}"
        )
    if scheduling.advance_booking_days < 1:
        raise ValueError(
            f"ADVANCE_BOOKING_DAYS must be >= 1, got {scheduling.advance_booking_days}"
        )
    if scheduling.min_advance_hours < 0:
        raise ValueError(
            f"MIN_ADVANCE_HOURS must be >= 0, got {scheduling.min_advance_hours}"
        )
    if scheduling.min_advance_hours >= scheduling.advance_booking_days * 24:
        raise ValueError(
            "MIN_ADVANCE_HOURS must be shorter than the ADVANCE_BOOKING_DAYS horizon"
        )
    for name, limit in [
        ("SESSION_SLOT_LIMIT", scheduling.session_slot_limit),
        ("LISTING_SLOT_LIMIT", scheduling.listing_slot_limit),
    ]:
        if limit < 1:
            raise ValueError(f"{name} must be >= 1, got {limit}")

    for weekday, times in scheduling.weekly_template.items():
        if weekday not in range(7):
            raise ValueError(f"Weekly template weekday must be 0..6, got {weekday}")
        for value in times:
            if not _TIME_PATTERN.match(value):
                raise ValueError(f"Weekly template time must be HH:MM, got {value!r}")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    if config.bot.default_language not in config.bot.supported_languages:
        raise ValueError(
            f"DEFAULT_LANGUAGE must be one of {config.bot.supported_languages}, "
            f"got {config.bot.default_language!r}"
        )
    if config.bot.session_timeout_seconds < 1:
        raise ValueError(
            f"SESSION_TIMEOUT_SECONDS must be >= 1, got {config.bot.session_timeout_seconds}"
        )
    if config.bot.max_retries < 1:
        raise ValueError(f"MAX_RETRIES must be >= 1, got {config.bot.max_retries}")

    _validate_scheduling(config.scheduling)

    if config.data.backup_interval_seconds <= 0:
        raise ValueError(
            "BACKUP_INTERVAL_SECONDS must be > 0, "
            f"got {config.data.backup_interval_seconds}"
        )

    if not 1 <= config.server.port <= 65535:
        raise ValueError(f"PORT must be between 1 and 65535, got {config.server.port}")
    for name, interval in [
        ("STATS_BROADCAST_SECONDS", config.server.stats_broadcast_seconds),
        ("EXPIRY_SWEEP_SECONDS", config.server.expiry_sweep_seconds),
    ]:
        if interval <= 0:
            raise ValueError(f"{name} must be > 0, got {interval}")


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    configure_logging(getattr(logging, config.log_level.upper(), logging.INFO))
    logger.info(
        "Configuration loaded for '%s' (%s, timezone %s)",
        config.company_name, config.bot.name, config.scheduling.timezone,
    )
    return config


# Singleton instance
settings = load_config()
