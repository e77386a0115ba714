"""
Configuration Module
====================
Environment configuration for the order tracker, read once and
validated up front so a bad value stops the process at startup.

Sections:
- StoreConfig: order-number prefix, policy flags, recommended labels
- SupabaseConfig: backend table and realtime (optional)
- LLMConfig: order-text extraction provider (optional)
- ServerConfig: HTTP bind address, CORS, log level

Without Supabase credentials the store runs on the local snapshot only;
without an LLM key text extraction is disabled.
"""

import os
import logging
from typing import Callable, Optional, Dict, Any, List
from pathlib import Path
from dotenv import load_dotenv


logger = logging.getLogger(__name__)


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LLM_PROVIDERS = ("claude", "openai")
TRUE_VALUES = ("true", "1", "yes", "on", "enabled")


# ============================================================================
# ENVIRONMENT LOADING
# ============================================================================

def load_environment(path: str = ".env"):
    """Merge a dotenv file into os.environ (existing variables win)."""
    env_file = Path(path)
    if env_file.exists():
        load_dotenv(env_file)
        logger.info(f"Environment loaded from {env_file}")
    else:
        logger.debug(f"No {env_file} file, reading process environment only")


load_environment()


class ConfigurationError(Exception):
    """Raised when an environment value is missing or malformed."""
    pass


# ============================================================================
# ENV READERS
# ============================================================================

def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def _get_bool_env(key: str, default: bool = False) -> bool:
    value = _get_optional_env(key)
    if value is None:
        return default
    return value.lower() in TRUE_VALUES


def _get_number_env(key: str, default, cast: Callable = int):
    """
    Read a numeric variable.

    Raises:
        ConfigurationError: If the value does not parse with `cast`
    """
    value = _get_optional_env(key)
    if value is None:
        return default

    try:
        return cast(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be a {cast.__name__}, got: {value}")


def _get_list_env(key: str, default: str = "") -> List[str]:
    """Comma-separated list, blanks dropped."""
    value = _get_optional_env(key, default) or ""
    return [part.strip() for part in value.split(",") if part.strip()]


# ============================================================================
# SECTIONS
# ============================================================================

class StoreConfig:
    """Order store policy and labels."""

    def __init__(self):
        self.order_number_prefix = _get_optional_env("ORDER_NUMBER_PREFIX", "P")
        if not self.order_number_prefix.replace("_", "").isalnum():
            raise ConfigurationError(
                f"ORDER_NUMBER_PREFIX must be alphanumeric: {self.order_number_prefix}"
            )

        self.allow_dispatch_revert = _get_bool_env("ALLOW_DISPATCH_REVERT", False)
        self.enforce_unique_order_number = _get_bool_env("ENFORCE_UNIQUE_ORDER_NUMBER", False)

        # Users allowed to take over another user's edit lock
        self.elevated_users = _get_list_env("ELEVATED_USERS", "Administrador")

        # Suggested in the UI, never enforced
        self.recommended_deposits = _get_list_env("RECOMMENDED_DEPOSITS", "A,B,C,D,E")
        self.recommended_package_types = _get_list_env(
            "RECOMMENDED_PACKAGE_TYPES",
            "BOLSA,BULTO,CAJA,OTRO"
        )

        self.cache_path = _get_optional_env("ORDER_CACHE_PATH", "data/orders_cache.json")


class SupabaseConfig:
    """Hosted orders table (optional)."""

    def __init__(self):
        self.url = _get_optional_env("SUPABASE_URL")
        self.key = _get_optional_env("SUPABASE_KEY")

        if self.url and not self.url.startswith("https://"):
            raise ConfigurationError(f"SUPABASE_URL must use https: {self.url}")

        if bool(self.url) != bool(self.key):
            logger.warning("SUPABASE_URL and SUPABASE_KEY must both be set; staying local-only")

        self.enabled = bool(self.url and self.key)
        self.table = _get_optional_env("SUPABASE_ORDERS_TABLE", "orders")
        self.enable_realtime = _get_bool_env("ENABLE_REALTIME", True)

        self.connection_timeout = _get_number_env("SUPABASE_TIMEOUT", 10)
        self.max_retries = _get_number_env("DB_MAX_RETRIES", 3)
        self.retry_delay = _get_number_env("DB_RETRY_DELAY", 1.0, float)

        if self.connection_timeout <= 0:
            raise ConfigurationError(f"SUPABASE_TIMEOUT must be positive: {self.connection_timeout}")
        if self.max_retries < 0:
            raise ConfigurationError(f"DB_MAX_RETRIES cannot be negative: {self.max_retries}")


class LLMConfig:
    """Order-text extraction provider (optional)."""

    # provider -> (key variable, model variable, default model)
    PROVIDER_SETTINGS = {
        "claude": ("ANTHROPIC_API_KEY", "CLAUDE_MODEL", "claude-sonnet-4-20250514"),
        "openai": ("OPENAI_API_KEY", "OPENAI_MODEL", "gpt-4o-mini"),
    }

    def __init__(self):
        self.provider = _get_optional_env("LLM_PROVIDER", "openai").lower()
        if self.provider not in LLM_PROVIDERS:
            raise ConfigurationError(
                f"LLM_PROVIDER must be one of {', '.join(LLM_PROVIDERS)}: {self.provider}"
            )

        key_var, model_var, default_model = self.PROVIDER_SETTINGS[self.provider]
        self.api_key = _get_optional_env(key_var)
        self.model = _get_optional_env(model_var, default_model)
        self.enabled = bool(self.api_key)
        self.timeout = _get_number_env("LLM_TIMEOUT", 15.0, float)


class ServerConfig:
    """HTTP server settings."""

    def __init__(self):
        self.host = _get_optional_env("HOST", "0.0.0.0")
        self.port = _get_number_env("PORT", 8000)
        self.cors_origins = _get_list_env("CORS_ORIGINS", "*")

        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(
                f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}: {self.log_level}"
            )


# ============================================================================
# CONFIG
# ============================================================================

class Config:
    """
    All sections, validated on construction.

    Raises:
        ConfigurationError: If any section rejects its environment
    """

    def __init__(self):
        try:
            self.store = StoreConfig()
            self.supabase = SupabaseConfig()
            self.llm = LLMConfig()
            self.server = ServerConfig()
        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            raise

        logger.info("Configuration validated")

    def get_safe_summary(self) -> Dict[str, Any]:
        """Summary for logs (no keys or URLs)."""
        return {
            "storage": "supabase" if self.supabase.enabled else "local",
            "orders_table": self.supabase.table,
            "realtime": self.supabase.enabled and self.supabase.enable_realtime,
            "llm_provider": self.llm.provider if self.llm.enabled else None,
            "llm_model": self.llm.model if self.llm.enabled else None,
            "policy": {
                "allow_dispatch_revert": self.store.allow_dispatch_revert,
                "enforce_unique_order_number": self.store.enforce_unique_order_number,
                "elevated_users": list(self.store.elevated_users),
            },
            "bind": f"{self.server.host}:{self.server.port}",
        }


_config: Optional[Config] = None


def get_config() -> Config:
    """Process-wide config, built on first use."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config() -> Config:
    """Re-read .env and the environment, replacing the cached config."""
    global _config
    load_environment()
    _config = Config()
    return _config


def validate_configuration():
    """
    Build the config and log what the service will run with.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    summary = get_config().get_safe_summary()

    logger.info(
        f"Storage: {summary['storage']} (table: {summary['orders_table']}, "
        f"realtime: {'on' if summary['realtime'] else 'off'})"
    )
    logger.info(f"Text extraction: {summary['llm_provider'] or 'disabled'}")
    logger.info(f"Listening on {summary['bind']}")

    for flag, value in summary["policy"].items():
        logger.info(f"Policy {flag}: {value}")
