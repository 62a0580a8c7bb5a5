"""Environment variable validation and management."""

import os
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    # The hint generator is optional: without HINT_LLM_URL every AI hint
    # degrades to the template pool.
    required_vars: Dict[str, str] = {}

    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "HINT_DAILY_TOKENS": os.getenv("HINT_DAILY_TOKENS") or "10",
    }

    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "HINT_LLM_URL": "Chat-completions endpoint of the hint generator",
        "HINT_LLM_MODEL": "Model identifier sent to the hint generator",
        "HINT_LLM_API_KEY": "Bearer token for the hint generator",
        "HINT_BONUS_TOKEN_CAP": "Upper bound for bonus hint tokens",
    }

    missing = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing.append(f"{var} ({description})")

    if missing:
        raise EnvironmentError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    url_vars = {"HINT_LLM_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    int_vars = {"HINT_DAILY_TOKENS", "HINT_BONUS_TOKEN_CAP", "HINT_LLM_MAX_RETRIES", "HINT_LLM_MAX_TOKENS"}
    for var in int_vars:
        value = os.getenv(var)
        if not value:
            continue
        try:
            parsed = int(value)
        except ValueError:
            raise EnvironmentError(f"{var} must be an integer, got '{value}'")
        if parsed < 0:
            raise EnvironmentError(f"{var} must not be negative, got {parsed}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}

def safe_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %d", name, value, default)
        return default

def safe_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", name, value, default)
        return default

def optional_int(name: str) -> Optional[int]:
    """Return the integer value of ``name`` or ``None`` when unset or zero."""
    value = safe_int(name, 0)
    return value if value > 0 else None
