"""Runtime configuration.

Environment variables:

    Cloudflare (primary, read-only):
        CLOUDFLARE_API_TOKEN   API token with DNS read permission
        CLOUDFLARE_ZONE_ID     Zone identifier

    ClouDNS (secondary, written to):
        CLOUDNS_AUTH_ID        API user id
        CLOUDNS_SUB_AUTH_ID    API sub-user id (used instead of CLOUDNS_AUTH_ID when set)
        CLOUDNS_AUTH_PASSWORD  API password
        CLOUDNS_DOMAIN_NAME    Zone name, e.g. example.com

    Sync behaviour:
        SYNC_MODE              "full", "incremental" or "bidirectional" (default: incremental)
        SYNC_DIRECTION         "bidirectional" selects bidirectional mode (legacy)
        CONFLICT_STRATEGY      "source_wins" (default). "target_wins" and
                               "newest_wins" are recognised but not supported.
        SYNC_INTERVAL          Seconds between cycles in watch mode (default: 3600)
        MAX_RETRIES            Attempts per record mutation (default: 3)
        RETRY_DELAY_SECONDS    Base backoff delay (default: 5)
        APPLY_CONCURRENCY      Mutations applied in parallel (default: 1, sequential)

    Collaborators:
        ENABLE_NOTIFICATIONS   "true" to POST results to NOTIFICATION_WEBHOOK
        NOTIFICATION_WEBHOOK   Webhook URL
        CACHE_PATH             JSON file caching the ClouDNS listing (default: disabled)
        METRICS_PATH           JSON-lines metrics file (default: metrics are logged)

    Runtime:
        RUN_MODE               "once" or "watch" (default: watch)
        POLL_INTERVAL_SECONDS  How often watch mode checks whether a sync is due (default: 60)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        DEBUG                  "true" forces LOG_LEVEL=DEBUG
        CLOUDSYNC_CONFIG_PATH  Optional YAML file; its keys (the lower-case field
                               names below) override environment values and
                               are reloaded when the file changes in watch mode.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .conflicts import SUPPORTED_STRATEGIES
from .errors import ConfigurationError
from .models import ConflictStrategy, SyncMode, SyncModeConfig

logger = logging.getLogger(__name__)

RUN_MODES = ("once", "watch")


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def env_log_level(environ: Optional[Mapping[str, str]] = None) -> str:
    """Log level named by LOG_LEVEL, or DEBUG when the DEBUG flag is set."""
    env = os.environ if environ is None else environ
    if _parse_bool(env.get("DEBUG"), default=False):
        return "DEBUG"
    return str(env.get("LOG_LEVEL", "INFO")).strip().upper()


def get_config_file_mtime(config_path: str) -> float:
    """Get modification time of config file, returns 0 if file doesn't exist."""
    try:
        return os.path.getmtime(config_path) if os.path.exists(config_path) else 0.0
    except OSError:
        return 0.0


@dataclass
class Settings:
    cloudflare_api_token: str = ""
    cloudflare_zone_id: str = ""
    cloudns_auth_id: str = ""
    cloudns_auth_password: str = ""
    cloudns_domain_name: str = ""
    cloudns_use_sub_auth: bool = False
    sync_mode: str = SyncMode.INCREMENTAL.value
    conflict_strategy: str = ConflictStrategy.SOURCE_WINS.value
    sync_interval: int = 3600
    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    apply_concurrency: int = 1
    enable_notifications: bool = False
    notification_webhook: str = ""
    cache_path: str = ""
    metrics_path: str = ""
    run_mode: str = "watch"
    poll_interval_seconds: int = 60
    log_level: str = "INFO"
    config_path: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        def get(name: str, default: str = "") -> str:
            return str(env.get(name, default)).strip()

        sub_auth_id = get("CLOUDNS_SUB_AUTH_ID")
        sync_mode = get("SYNC_MODE", SyncMode.INCREMENTAL.value).lower()
        if get("SYNC_DIRECTION").lower() == "bidirectional":
            sync_mode = SyncMode.BIDIRECTIONAL.value
        log_level = env_log_level(env)

        try:
            return cls(
                cloudflare_api_token=get("CLOUDFLARE_API_TOKEN"),
                cloudflare_zone_id=get("CLOUDFLARE_ZONE_ID"),
                cloudns_auth_id=sub_auth_id or get("CLOUDNS_AUTH_ID"),
                cloudns_auth_password=get("CLOUDNS_AUTH_PASSWORD"),
                cloudns_domain_name=get("CLOUDNS_DOMAIN_NAME"),
                cloudns_use_sub_auth=bool(sub_auth_id),
                sync_mode=sync_mode,
                conflict_strategy=get("CONFLICT_STRATEGY", ConflictStrategy.SOURCE_WINS.value).lower(),
                sync_interval=int(get("SYNC_INTERVAL", "3600")),
                max_retries=int(get("MAX_RETRIES", "3")),
                retry_delay_seconds=float(get("RETRY_DELAY_SECONDS", "5")),
                apply_concurrency=int(get("APPLY_CONCURRENCY", "1")),
                enable_notifications=_parse_bool(env.get("ENABLE_NOTIFICATIONS"), default=False),
                notification_webhook=get("NOTIFICATION_WEBHOOK"),
                cache_path=get("CACHE_PATH"),
                metrics_path=get("METRICS_PATH"),
                run_mode=get("RUN_MODE", "watch").lower(),
                poll_interval_seconds=int(get("POLL_INTERVAL_SECONDS", "60")),
                log_level=log_level,
                config_path=get("CLOUDSYNC_CONFIG_PATH"),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

    def apply_overrides(self, overrides: Mapping[str, Any]) -> None:
        """Overwrite fields from a mapping, coercing to each field's type."""
        defaults = Settings()
        known = {f.name for f in fields(self)}
        for key, value in overrides.items():
            if key not in known:
                logger.warning(f"Ignoring unknown setting '{key}'")
                continue
            default = getattr(defaults, key)
            try:
                if isinstance(default, bool):
                    coerced: Any = _parse_bool(value, default=default)
                elif isinstance(default, int):
                    coerced = int(value)
                elif isinstance(default, float):
                    coerced = float(value)
                else:
                    coerced = "" if value is None else str(value).strip()
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid value for '{key}': {value!r}", setting=key
                ) from e
            setattr(self, key, coerced)

    def mode_config(self) -> SyncModeConfig:
        try:
            mode = SyncMode(self.sync_mode)
        except ValueError:
            raise ConfigurationError(
                f"Unsupported sync mode '{self.sync_mode}'", setting="SYNC_MODE"
            ) from None
        try:
            strategy = ConflictStrategy(self.conflict_strategy)
        except ValueError:
            raise ConfigurationError(
                f"Unknown conflict strategy '{self.conflict_strategy}'",
                setting="CONFLICT_STRATEGY",
            ) from None
        return SyncModeConfig(mode=mode, conflict_strategy=strategy)


def load_yaml_overrides(config_path: str) -> Dict[str, Any]:
    path = Path(config_path)
    if not path.is_file():
        return {}
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Config file {config_path} must contain a mapping", setting="CLOUDSYNC_CONFIG_PATH"
        )
    return data


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Settings from the environment, overlaid with the optional YAML file."""
    settings = Settings.from_env(environ)
    if settings.config_path:
        try:
            overrides = load_yaml_overrides(settings.config_path)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to load config from {settings.config_path}: {e}",
                setting="CLOUDSYNC_CONFIG_PATH",
            ) from e
        if overrides:
            settings.apply_overrides(overrides)
            logger.info(f"Loaded {len(overrides)} setting(s) from {settings.config_path}")
    return settings


def validate_settings(settings: Settings) -> List[str]:
    """Return a list of configuration errors (empty when valid)."""
    errors: List[str] = []

    if not settings.cloudflare_api_token:
        errors.append("CLOUDFLARE_API_TOKEN is required")
    if not settings.cloudflare_zone_id:
        errors.append("CLOUDFLARE_ZONE_ID is required")
    if not settings.cloudns_auth_id:
        errors.append("CLOUDNS_AUTH_ID or CLOUDNS_SUB_AUTH_ID is required")
    if not settings.cloudns_auth_password:
        errors.append("CLOUDNS_AUTH_PASSWORD is required")
    if not settings.cloudns_domain_name:
        errors.append("CLOUDNS_DOMAIN_NAME is required")

    try:
        mode_config = settings.mode_config()
        if (
            mode_config.mode is SyncMode.BIDIRECTIONAL
            and mode_config.conflict_strategy not in SUPPORTED_STRATEGIES
        ):
            errors.append(
                f"CONFLICT_STRATEGY '{settings.conflict_strategy}' is not supported yet; "
                f"use '{ConflictStrategy.SOURCE_WINS.value}'"
            )
    except ConfigurationError as e:
        errors.append(e.message)

    if settings.run_mode not in RUN_MODES:
        errors.append(f"Invalid RUN_MODE: {settings.run_mode}. Use 'once' or 'watch'")
    if settings.max_retries < 1:
        errors.append("MAX_RETRIES must be at least 1")
    if settings.apply_concurrency < 1:
        errors.append("APPLY_CONCURRENCY must be at least 1")
    if settings.sync_interval < 0:
        errors.append("SYNC_INTERVAL must not be negative")

    if settings.enable_notifications and not settings.notification_webhook:
        logger.warning("ENABLE_NOTIFICATIONS is set but NOTIFICATION_WEBHOOK is empty")

    return errors
