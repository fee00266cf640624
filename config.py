"""
============================================================
FLOW-PRESSURE v1.0 - Configuration Management
============================================================
Centralized configuration, environment validation, and logging.

This module MUST be imported before any other FLOW-PRESSURE module.
It handles:
- Environment variable loading (.env, optional)
- Settings validation (fail-fast on invalid values)
- Global logger configuration (console + rotating file)
- Startup health checks

Usage:
    from config import get_settings, get_logger

    settings = get_settings()
    logger = get_logger(__name__)

    logger.info("Manual capital: %s", settings.manual_capital)

CLI Validation:
    python config.py  # Validates environment and displays summary
============================================================
"""

import logging
import logging.handlers
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv


# ──────────────────────────────────────────────────────────
# SETTINGS DATA CLASS
# ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Settings:
    """
    Immutable configuration settings loaded from environment.

    Every field has a usable default so the system can boot offline
    against the local entity store. API keys are optional; features that
    need them degrade to deterministic fallbacks when absent.
    """

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # MARKET DATA & AI
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    finnhub_api_key: Optional[str] = None
    finnhub_base_url: str = "https://finnhub.io/api/v1"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o"
    openai_max_tokens: int = 2000
    openai_temperature: float = 0.3

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # ENTITY BACKEND (BaaS)
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    baas_base_url: Optional[str] = None
    baas_app_id: Optional[str] = None
    baas_api_key: Optional[str] = None

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # NOTIFICATIONS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    discord_webhook_url: Optional[str] = None
    alert_cooldown_minutes: int = 30
    spi_alert_threshold: float = 15.0

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # SYSTEM CONFIGURATION
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    log_level: str = "INFO"
    language: str = "en"
    market_timezone: str = "America/New_York"

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # FILE PATHS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    data_dir: str = "data/entities"
    cache_dir: str = "data/cache"
    log_dir: str = "logs"
    backup_dir: str = "backups"

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # TRADING PARAMETERS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    manual_capital: float = 2000.0
    manual_fee: float = 0.08
    slippage_rate: float = 0.0005
    order_fee_rate: float = 0.008
    delay_compensation_seconds: float = 3.0
    sim_starting_cash: float = 100000.0
    virtual_starting_cash: float = 10000.0
    backtest_initial_capital: float = 10000.0

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # POLLING INTERVALS (seconds)
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    pressure_interval_seconds: int = 10
    semantic_interval_seconds: int = 30
    auto_exit_interval_seconds: int = 5
    order_check_interval_seconds: int = 5
    opportunity_interval_seconds: int = 900
    account_interval_seconds: int = 60

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # PERFORMANCE
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    quote_cache_ttl_seconds: int = 5
    request_timeout_seconds: int = 10

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # DEVELOPMENT / DEBUG
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    debug_mode: bool = False
    mock_api_calls: bool = False

    def __post_init__(self) -> None:
        """
        Validate settings after initialization.

        Raises:
            ValueError: If any setting is invalid.
        """
        if self.openai_api_key and not self.openai_api_key.startswith("sk-"):
            raise ValueError(
                "INVALID OPENAI_API_KEY format.\n"
                "Key should start with 'sk-' or 'sk-proj-'."
            )

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level not in valid_levels:
            raise ValueError(
                f"Invalid LOG_LEVEL: {self.log_level}. "
                f"Must be one of: {', '.join(valid_levels)}"
            )

        if self.language not in ("en", "zh"):
            raise ValueError("LANGUAGE must be one of: en, zh.")

        if self.manual_capital <= 0:
            raise ValueError("manual_capital must be positive.")

        for name in ("manual_fee", "slippage_rate", "order_fee_rate"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative.")

        if not (0 <= self.slippage_rate < 0.1):
            raise ValueError("slippage_rate must be in the range [0, 0.1).")

        for name in (
            "pressure_interval_seconds",
            "semantic_interval_seconds",
            "auto_exit_interval_seconds",
            "order_check_interval_seconds",
            "opportunity_interval_seconds",
            "account_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be a positive number of seconds.")

        if self.baas_base_url and not self.baas_app_id:
            raise ValueError("BAAS_APP_ID is required when BAAS_BASE_URL is set.")


# ──────────────────────────────────────────────────────────
# GLOBAL STATE (Singleton Pattern)
# ──────────────────────────────────────────────────────────

_SETTINGS: Optional[Settings] = None
_LOGGER_INITIALIZED: bool = False
_RUN_ID: str = os.getenv("RUN_ID", str(uuid.uuid4()))


def get_run_id() -> str:
    """Return process-level run id for correlating diagnostics and logs."""
    return _RUN_ID


def mask_api_key(value: Optional[str]) -> str:
    """Mask an API key as prefix + last 4 characters."""
    if not value:
        return "(not set)"
    cleaned = value.strip()
    if len(cleaned) <= 7:
        return "***"
    prefix = "sk-" if cleaned.startswith("sk-") else "***"
    return f"{prefix}...{cleaned[-4:]}"


def mask_url(value: Optional[str]) -> str:
    """Mask URL path/query/fragment while preserving scheme+host."""
    if not value:
        return "(not set)"
    parsed = urlsplit(value.strip())
    if not parsed.scheme or not parsed.netloc:
        return "***"
    return f"{parsed.scheme}://{parsed.netloc}/***"


def mask_secret_value(name: str, value: Optional[str]) -> str:
    """Mask known secret value types for safe diagnostics/logging."""
    key = (name or "").strip().upper()
    if "KEY" in key:
        return mask_api_key(value)
    if "WEBHOOK" in key or "URL" in key:
        return mask_url(value)
    if not value:
        return "(not set)"
    return "***"


def _parse_bool(value: Optional[str], default: bool) -> bool:
    """
    Parse a boolean value from environment string.

    Args:
        value: Raw environment string value.
        default: Default boolean if value is empty.

    Returns:
        bool: Parsed boolean value.
    """
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_int(value: Optional[str], default: int) -> int:
    """Parse an integer from environment string."""
    return int(value) if value not in (None, "") else default


def _parse_float(value: Optional[str], default: float) -> float:
    """Parse a float from environment string."""
    return float(value) if value not in (None, "") else default


def load_settings() -> Settings:
    """
    Load and cache settings from environment.

    This is called automatically by get_settings() on first access.
    A ``.env`` file in the working directory is loaded when present;
    variables already set in the process environment take precedence.

    Returns:
        Settings: Validated settings object.

    Raises:
        ValueError: If settings are invalid.
    """
    global _SETTINGS

    if _SETTINGS is not None:
        return _SETTINGS

    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path, override=False)

    settings = Settings(
        # Market data & AI
        finnhub_api_key=os.getenv("FINNHUB_API_KEY") or None,
        finnhub_base_url=os.getenv("FINNHUB_BASE_URL", "https://finnhub.io/api/v1"),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o"),
        openai_max_tokens=_parse_int(os.getenv("OPENAI_MAX_TOKENS"), 2000),
        openai_temperature=_parse_float(os.getenv("OPENAI_TEMPERATURE"), 0.3),
        # Entity backend
        baas_base_url=os.getenv("BAAS_BASE_URL") or None,
        baas_app_id=os.getenv("BAAS_APP_ID") or None,
        baas_api_key=os.getenv("BAAS_API_KEY") or None,
        # Notifications
        discord_webhook_url=os.getenv("DISCORD_WEBHOOK_URL") or None,
        alert_cooldown_minutes=_parse_int(os.getenv("ALERT_COOLDOWN_MINUTES"), 30),
        spi_alert_threshold=_parse_float(os.getenv("SPI_ALERT_THRESHOLD"), 15.0),
        # System
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        language=os.getenv("LANGUAGE", "en").lower(),
        market_timezone=os.getenv("MARKET_TIMEZONE", "America/New_York"),
        # Paths
        data_dir=os.getenv("DATA_DIR", "data/entities"),
        cache_dir=os.getenv("CACHE_DIR", "data/cache"),
        log_dir=os.getenv("LOG_DIR", "logs"),
        backup_dir=os.getenv("BACKUP_DIR", "backups"),
        # Trading
        manual_capital=_parse_float(os.getenv("MANUAL_CAPITAL"), 2000.0),
        manual_fee=_parse_float(os.getenv("MANUAL_FEE"), 0.08),
        slippage_rate=_parse_float(os.getenv("SLIPPAGE_RATE"), 0.0005),
        order_fee_rate=_parse_float(os.getenv("ORDER_FEE_RATE"), 0.008),
        delay_compensation_seconds=_parse_float(
            os.getenv("DELAY_COMPENSATION_SECONDS"), 3.0
        ),
        sim_starting_cash=_parse_float(os.getenv("SIM_STARTING_CASH"), 100000.0),
        virtual_starting_cash=_parse_float(os.getenv("VIRTUAL_STARTING_CASH"), 10000.0),
        backtest_initial_capital=_parse_float(
            os.getenv("BACKTEST_INITIAL_CAPITAL"), 10000.0
        ),
        # Polling
        pressure_interval_seconds=_parse_int(os.getenv("PRESSURE_INTERVAL_SECONDS"), 10),
        semantic_interval_seconds=_parse_int(os.getenv("SEMANTIC_INTERVAL_SECONDS"), 30),
        auto_exit_interval_seconds=_parse_int(os.getenv("AUTO_EXIT_INTERVAL_SECONDS"), 5),
        order_check_interval_seconds=_parse_int(
            os.getenv("ORDER_CHECK_INTERVAL_SECONDS"), 5
        ),
        opportunity_interval_seconds=_parse_int(
            os.getenv("OPPORTUNITY_INTERVAL_SECONDS"), 900
        ),
        account_interval_seconds=_parse_int(os.getenv("ACCOUNT_INTERVAL_SECONDS"), 60),
        # Performance
        quote_cache_ttl_seconds=_parse_int(os.getenv("QUOTE_CACHE_TTL_SECONDS"), 5),
        request_timeout_seconds=_parse_int(os.getenv("REQUEST_TIMEOUT_SECONDS"), 10),
        # Debug
        debug_mode=_parse_bool(os.getenv("DEBUG_MODE"), False),
        mock_api_calls=_parse_bool(os.getenv("MOCK_API_CALLS"), False),
    )

    _SETTINGS = settings
    return _SETTINGS


def get_settings() -> Settings:
    """
    Get the cached global Settings instance.

    Returns:
        Settings: Global settings object loaded from environment.
    """
    if _SETTINGS is None:
        return load_settings()
    return _SETTINGS


# ──────────────────────────────────────────────────────────
# LOGGING CONFIGURATION
# ──────────────────────────────────────────────────────────


def setup_logging() -> None:
    """
    Configure global logging for FLOW-PRESSURE.

    Creates:
    - Console handler (INFO+)
    - Rotating file handler (DEBUG+, 5MB, 3 backups)
    - Format: [TIMESTAMP] [LEVEL] [run=ID] module_name - message

    Called automatically by get_logger() on first access.
    """
    global _LOGGER_INITIALIZED

    if _LOGGER_INITIALIZED:
        return

    settings = get_settings()

    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger("flowpressure")
    root_logger.setLevel(settings.log_level)
    root_logger.propagate = False
    root_logger.handlers.clear()

    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)-8s] [run=%(run_id)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    class _RunIdFilter(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            if not hasattr(record, "run_id"):
                record.run_id = get_run_id()
            return True

    run_filter = _RunIdFilter()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(run_filter)
    root_logger.addHandler(console_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        log_dir / "flowpressure.log",
        maxBytes=5_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(run_filter)
    root_logger.addHandler(file_handler)

    _LOGGER_INITIALIZED = True

    root_logger.info("=" * 70)
    root_logger.info("FLOW-PRESSURE Logging System Initialized")
    root_logger.info("Log Level: %s", settings.log_level)
    root_logger.info("Log File: %s", log_dir / "flowpressure.log")
    root_logger.info("RUN_ID: %s", get_run_id())
    root_logger.info("=" * 70)


def get_logger(name: str = "flowpressure") -> logging.Logger:
    """
    Get a configured logger instance for a module.

    Args:
        name: Logger name, usually __name__ of the calling module.

    Returns:
        logging.Logger: Logger configured with global handlers.
    """
    if not _LOGGER_INITIALIZED:
        setup_logging()

    if name == "flowpressure":
        return logging.getLogger("flowpressure")
    return logging.getLogger("flowpressure").getChild(name)


def is_mock_mode() -> bool:
    """Return True when MOCK_API_CALLS is enabled in loaded settings."""
    return bool(get_settings().mock_api_calls)


# ──────────────────────────────────────────────────────────
# STARTUP VALIDATION
# ──────────────────────────────────────────────────────────


def validate_environment() -> bool:
    """
    Run environment validation checks.

    Validates:
    - Settings loading
    - Directory existence (entities, cache, logs, backups)
    - Basic write permissions in the entity and log directories

    Returns:
        bool: True if all checks pass.

    Raises:
        RuntimeError: If any critical check fails.
    """
    logger = get_logger(__name__)

    try:
        settings = get_settings()
        logger.info("Settings loaded successfully.")

        logger.info("Finnhub API key: %s", mask_api_key(settings.finnhub_api_key))
        logger.info("OpenAI API key: %s", mask_api_key(settings.openai_api_key))

        if not settings.finnhub_api_key:
            logger.warning("FINNHUB_API_KEY not set. Quotes will fall back to yfinance.")
        if not settings.openai_api_key:
            logger.warning("OPENAI_API_KEY not set. AI features will use fallback payloads.")

        if settings.baas_base_url:
            logger.info("Entity backend: remote %s", mask_url(settings.baas_base_url))
        else:
            logger.info("Entity backend: local store at %s", settings.data_dir)

        if settings.discord_webhook_url:
            logger.info("Discord webhook: %s", mask_url(settings.discord_webhook_url))
        else:
            logger.warning("Discord webhook NOT configured. Alerts will be disabled.")

        dirs_to_ensure = {
            "entities": Path(settings.data_dir),
            "cache": Path(settings.cache_dir),
            "logs": Path(settings.log_dir),
            "backups": Path(settings.backup_dir),
        }

        for label, path in dirs_to_ensure.items():
            path.mkdir(parents=True, exist_ok=True)
            logger.debug("Directory ensured for %s: %s", label, path)

        for directory in (settings.log_dir, settings.data_dir):
            test_file = Path(directory) / ".write_test"
            test_file.write_text("ok", encoding="utf-8")
            test_file.unlink(missing_ok=True)
        logger.info("Write permissions verified.")

        return True

    except Exception as exc:  # noqa: BLE001
        logger.critical("Environment validation failed: %s", exc)
        raise RuntimeError(
            "Cannot start FLOW-PRESSURE due to configuration errors."
        ) from exc


# ──────────────────────────────────────────────────────────
# CLI VALIDATION TOOL
# ──────────────────────────────────────────────────────────


def _print_summary(settings: Settings) -> None:
    """Print a human-readable configuration summary to stdout."""
    print("\nConfiguration Summary:")
    print(f"  - Finnhub Key: {mask_api_key(settings.finnhub_api_key)}")
    print(f"  - OpenAI Model: {settings.openai_model}")
    print(f"  - OpenAI Key: {mask_api_key(settings.openai_api_key)}")
    print(f"  - Entity Backend: {mask_url(settings.baas_base_url) if settings.baas_base_url else settings.data_dir}")
    print(f"  - Discord Webhook: {mask_url(settings.discord_webhook_url)}")
    print(f"  - Log Level: {settings.log_level}")
    print(f"  - Language: {settings.language}")
    print(f"  - Cache Dir: {settings.cache_dir}")
    print(f"  - Log Dir: {settings.log_dir}")
    print(f"  - Backup Dir: {settings.backup_dir}")
    print(f"  - Manual Capital: {settings.manual_capital:,.2f}")
    print(f"  - Manual Fee / Slippage: {settings.manual_fee} / {settings.slippage_rate}")
    print(f"  - Order Fee Rate: {settings.order_fee_rate}")
    print(f"  - Market Timezone: {settings.market_timezone}")
    print(f"  - Mock API Calls: {'ENABLED' if settings.mock_api_calls else 'DISABLED'}")


if __name__ == "__main__":
    print("\n" + "=" * 70)
    print("FLOW-PRESSURE Configuration Validator")
    print("=" * 70 + "\n")

    try:
        validate_environment()
        cfg = get_settings()
        _print_summary(cfg)
        print("\nAll checks passed. FLOW-PRESSURE is ready to launch.\n")
    except Exception as exc:  # noqa: BLE001
        print("\nFATAL ERROR:")
        print(exc)
        print("\nFix the configuration issues above and re-run `python config.py`.\n")
        raise SystemExit(1)
