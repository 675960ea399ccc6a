"""
Centralized configuration loader for the reelqueue scheduler.

Loads settings from ``config/settings.yaml`` and environment variables,
providing the production defaults when configuration files are absent.

Provides:
    - PublishingConfig: Publish cycle cadence, retry ceiling, stuck timeout
    - TokenRefreshConfig: Token refresh cadence and expiry window
    - InstagramConfig: Graph API credentials and container polling
    - Settings: Global application settings loaded from YAML + env vars
    - get_settings(): Singleton accessor for Settings
    - validate_env(): Startup validation of required environment variables
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from reelqueue.exceptions import ConfigurationError

# ---------------------------------------------------------------------------
# Load .env file (no-op if file does not exist)
# ---------------------------------------------------------------------------
load_dotenv()

# ---------------------------------------------------------------------------
# Project root directory (parent of reelqueue/)
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


def _apply_env_overrides(config: Any, env_map: Dict[str, tuple]) -> None:
    """Override dataclass attributes from environment variables.

    Args:
        config: Dataclass instance to mutate.
        env_map: ``{ENV_VAR: (attr_name, cast_fn)}``.

    Raises:
        ConfigurationError: If an env var is set but cannot be cast.
    """
    for env_key, (attr_name, cast_fn) in env_map.items():
        env_val = os.environ.get(env_key)
        if env_val is None:
            continue
        try:
            setattr(config, attr_name, cast_fn(env_val))
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(
                f"Invalid value for env var {env_key}='{env_val}': {exc}"
            ) from exc


def _from_section(cls: Any, section: Dict[str, Any]) -> Any:
    """Build a dataclass from a YAML section, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        logger.warning(
            "Ignoring unknown %s settings: %s", cls.__name__, sorted(unknown)
        )
    return cls(**{k: v for k, v in section.items() if k in known})


# ===========================================================================
# PUBLISH CYCLE CONFIGURATION
# ===========================================================================


@dataclass
class PublishingConfig:
    """
    Cadence and failure policy of the publish cycle.

    Defaults match the single-instance production deployment: one tick a
    minute, first tick 30 seconds after start, three attempts per post.
    """

    interval_seconds: int = 60
    startup_delay_seconds: int = 30
    max_attempts: int = 3
    # Long enough to cover container polling (5 min), short enough to
    # catch a crashed previous cycle within the hour.
    stuck_timeout_minutes: int = 15
    batch_size: int = 10
    lookahead_days: int = 30
    preflight_max_slots: int = 20

    def __post_init__(self) -> None:
        _apply_env_overrides(self, {
            "PUBLISH_INTERVAL_SECONDS": ("interval_seconds", int),
            "PUBLISH_STARTUP_DELAY_SECONDS": ("startup_delay_seconds", int),
            "PUBLISH_MAX_ATTEMPTS": ("max_attempts", int),
            "PUBLISH_STUCK_TIMEOUT_MINUTES": ("stuck_timeout_minutes", int),
            "PUBLISH_BATCH_SIZE": ("batch_size", int),
        })
        if self.max_attempts < 1:
            raise ConfigurationError(
                f"max_attempts must be >= 1, got {self.max_attempts}"
            )
        if self.interval_seconds <= 0:
            raise ConfigurationError(
                f"interval_seconds must be positive, got {self.interval_seconds}"
            )


# ===========================================================================
# TOKEN REFRESH CONFIGURATION
# ===========================================================================


@dataclass
class TokenRefreshConfig:
    """Cadence of the proactive token refresh cycle."""

    interval_hours: int = 24
    startup_delay_seconds: int = 300
    # Tokens expiring within this window are refreshed.
    refresh_window_days: int = 7
    lock_capacity: int = 1024

    def __post_init__(self) -> None:
        _apply_env_overrides(self, {
            "TOKEN_REFRESH_INTERVAL_HOURS": ("interval_hours", int),
            "TOKEN_REFRESH_STARTUP_DELAY_SECONDS": ("startup_delay_seconds", int),
            "TOKEN_REFRESH_WINDOW_DAYS": ("refresh_window_days", int),
        })


# ===========================================================================
# INSTAGRAM GRAPH API CONFIGURATION
# ===========================================================================


@dataclass
class InstagramConfig:
    """Graph API credentials and media container polling."""

    app_id: str = ""
    app_secret: str = ""
    graph_api_version: str = "v21.0"
    container_poll_interval_seconds: float = 5.0
    container_poll_attempts: int = 60  # 5 minutes at 5s intervals
    request_timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        self.app_id = self.app_id or os.environ.get("FACEBOOK_APP_ID", "")
        self.app_secret = self.app_secret or os.environ.get("FACEBOOK_APP_SECRET", "")
        _apply_env_overrides(self, {
            "GRAPH_API_VERSION": ("graph_api_version", str),
        })

    @property
    def base_url(self) -> str:
        return f"https://graph.facebook.com/{self.graph_api_version}"


# ===========================================================================
# GLOBAL SETTINGS
# ===========================================================================


@dataclass
class Settings:
    """
    Global application settings.

    Loaded from ``config/settings.yaml`` when available, falling back to
    defaults.  Environment variables override YAML values for secrets and
    deployment-specific configuration.
    """

    # Logging
    log_level: str = "INFO"

    # Caption generation
    caption_model: str = "claude-sonnet-4-5"
    caption_hashtag_count: int = 25

    publishing: PublishingConfig = field(default_factory=PublishingConfig)
    token_refresh: TokenRefreshConfig = field(default_factory=TokenRefreshConfig)
    instagram: InstagramConfig = field(default_factory=InstagramConfig)

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "Settings":
        """
        Load settings from a YAML file.

        If the file does not exist, returns an instance with all defaults.
        Environment variables override YAML values for specific keys.

        Args:
            path: Path to the YAML file.  Defaults to
                ``<PROJECT_ROOT>/config/settings.yaml``.

        Returns:
            Populated Settings instance.

        Raises:
            ConfigurationError: If the YAML file exists but cannot be parsed.
        """
        path = path or PROJECT_ROOT / "config" / "settings.yaml"

        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    f"Failed to parse settings YAML at {path}: {exc}"
                ) from exc

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Settings YAML at {path} must be a mapping, got {type(data).__name__}"
            )

        settings = cls(
            log_level=str(data.get("log_level", "INFO")).upper(),
            caption_model=data.get("caption_model", "claude-sonnet-4-5"),
            caption_hashtag_count=data.get("caption_hashtag_count", 25),
            publishing=_from_section(PublishingConfig, data.get("publishing", {})),
            token_refresh=_from_section(TokenRefreshConfig, data.get("token_refresh", {})),
            instagram=_from_section(InstagramConfig, data.get("instagram", {})),
        )

        env_level = os.environ.get("LOG_LEVEL")
        if env_level:
            settings.log_level = env_level.upper()

        return settings


# ===========================================================================
# SINGLETON SETTINGS ACCESSOR
# ===========================================================================

_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global Settings singleton.

    On first call, loads from ``config/settings.yaml`` (or defaults).
    Subsequent calls return the cached instance.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """Reset the cached Settings singleton (tests, config reloads)."""
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# ENVIRONMENT VARIABLE VALIDATION
# ===========================================================================

REQUIRED_ENV_VARS: List[str] = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
    "FACEBOOK_APP_ID",
    "FACEBOOK_APP_SECRET",
]

# Without an Anthropic key, posts queued without a caption get an empty one.
OPTIONAL_ENV_VARS: List[str] = [
    "ANTHROPIC_API_KEY",
]


def validate_env(strict: bool = True) -> Dict[str, bool]:
    """
    Validate that required environment variables are set.

    Args:
        strict: If ``True``, raise ``ConfigurationError`` when any required
            variable is missing.  If ``False``, return the status dict
            without raising.

    Returns:
        Dict mapping variable name to presence status.

    Raises:
        ConfigurationError: If ``strict=True`` and required vars are missing.
    """
    status: Dict[str, bool] = {}
    missing: List[str] = []

    for var in REQUIRED_ENV_VARS:
        present = bool(os.environ.get(var))
        status[var] = present
        if not present:
            missing.append(var)

    for var in OPTIONAL_ENV_VARS:
        status[var] = bool(os.environ.get(var))

    if strict and missing:
        raise ConfigurationError(
            f"Missing required environment variables: {missing}. "
            f"Copy .env.example to .env and fill in the values."
        )

    return status


__all__ = [
    "PROJECT_ROOT",
    "PublishingConfig",
    "TokenRefreshConfig",
    "InstagramConfig",
    "Settings",
    "get_settings",
    "reset_settings",
    "validate_env",
    "REQUIRED_ENV_VARS",
    "OPTIONAL_ENV_VARS",
]
