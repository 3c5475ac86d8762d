"""Configuration loaded from environment variables."""

import logging
import os

logger = logging.getLogger(__name__)


def _float_env(name: str, default: float | None) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using %r", name, raw, default)
        return default
    if value < 0:
        logger.warning("Negative %s=%r, using %r", name, raw, default)
        return default
    return value


class AppConfig:
    """Application settings read from the environment at construction time."""

    def __init__(self) -> None:
        # Paths
        self.DATA_DIR: str = os.getenv("DATA_DIR", "").strip() or "./data"

        # Engine
        self.TIME_SCALE: float = _float_env("TIME_SCALE", 1.0)  # real seconds per time-unit
        self.RUN_TIMEOUT_SECONDS: float | None = _float_env("RUN_TIMEOUT_SECONDS", None)

        # Logging
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

        # CORS
        origins = os.getenv("CORS_ORIGINS", "*")
        self.CORS_ORIGINS: list[str] = [o.strip() for o in origins.split(",") if o.strip()] or ["*"]

    @property
    def log_level(self) -> int:
        level = logging.getLevelName(self.LOG_LEVEL)
        return level if isinstance(level, int) else logging.INFO
