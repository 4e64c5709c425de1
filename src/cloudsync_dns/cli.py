#!/usr/bin/env python3
"""cloudsync-dns - Cloudflare to ClouDNS zone synchronization

Keeps the records of a ClouDNS secondary zone in line with the authoritative
zone hosted on Cloudflare. Runs a single cycle (RUN_MODE=once) or polls and
syncs every SYNC_INTERVAL seconds (RUN_MODE=watch).

See cloudsync_dns.settings for the full list of environment variables.

Sync modes:
    incremental     Add missing records and update drifted ones (default)
    full            Delete every ClouDNS record, then re-add all Cloudflare records
    bidirectional   Incremental plus removal of ClouDNS-only records; drifted
                    pairs are resolved with CONFLICT_STRATEGY
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

from .cache import CachedTarget, JsonFileCache
from .errors import DNSSyncError
from .models import SkippedResult
from .notify import JsonLinesMetricsSink, LoggingMetricsSink, MetricsSink, Notifier, WebhookNotifier
from .orchestrator import CycleResult, SyncOrchestrator
from .providers import ClouDNSTarget, CloudflareSource, SourceProvider, TargetProvider
from .retry import RetryPolicy
from .settings import (
    Settings,
    env_log_level,
    get_config_file_mtime,
    load_settings,
    validate_settings,
)

logger = logging.getLogger(__name__)

MIN_POLL_SECONDS = 5

# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(level: str) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # basicConfig is a no-op once handlers exist; a reloaded level still applies.
    logging.getLogger().setLevel(numeric_level)


# =============================================================================
# Provider Registry
# =============================================================================


def create_source_provider(settings: Settings) -> SourceProvider:
    return CloudflareSource(
        api_token=settings.cloudflare_api_token,
        zone_id=settings.cloudflare_zone_id,
        zone_name=settings.cloudns_domain_name,
    )


def create_target_provider(settings: Settings) -> TargetProvider:
    target: TargetProvider = ClouDNSTarget(
        auth_id=settings.cloudns_auth_id,
        auth_password=settings.cloudns_auth_password,
        domain_name=settings.cloudns_domain_name,
        use_sub_auth=settings.cloudns_use_sub_auth,
    )
    if settings.cache_path:
        target = CachedTarget(target, JsonFileCache(settings.cache_path))
    return target


def create_notifier(settings: Settings) -> Optional[Notifier]:
    if settings.enable_notifications and settings.notification_webhook:
        return WebhookNotifier(settings.notification_webhook)
    return None


def create_metrics_sink(settings: Settings) -> MetricsSink:
    if settings.metrics_path:
        return JsonLinesMetricsSink(settings.metrics_path)
    return LoggingMetricsSink()


def orchestrator_options(settings: Settings) -> Dict[str, Any]:
    return {
        "source": create_source_provider(settings),
        "target": create_target_provider(settings),
        "mode_config": settings.mode_config(),
        "retry_policy": RetryPolicy(
            max_attempts=settings.max_retries, base_delay=settings.retry_delay_seconds
        ),
        "notifier": create_notifier(settings),
        "metrics": create_metrics_sink(settings),
        "apply_concurrency": settings.apply_concurrency,
        "sync_interval": settings.sync_interval,
    }


def create_orchestrator(settings: Settings) -> SyncOrchestrator:
    return SyncOrchestrator(**orchestrator_options(settings))


def reconfigure_orchestrator(orchestrator: SyncOrchestrator, settings: Settings) -> None:
    """Swap providers and policies in place, keeping history and last-sync time."""
    for key, value in orchestrator_options(settings).items():
        setattr(orchestrator, key, value)


# =============================================================================
# Runner
# =============================================================================


def _log_result(result: CycleResult) -> None:
    if isinstance(result, SkippedResult):
        logger.debug(f"Sync skipped: {result.reason}")
        return
    for entry in result.failed:
        logger.warning(f"  {entry.action.value} {entry.record_identity} failed: {entry.error}")
    logger.debug(json.dumps(result.to_dict(), indent=2))


async def run_once(orchestrator: SyncOrchestrator) -> int:
    try:
        result = await orchestrator.run_cycle()
    except DNSSyncError as e:
        logger.error(f"Sync failed [{e.code}]: {e}")
        return 1
    _log_result(result)
    if isinstance(result, SkippedResult) or result.failed:
        return 1
    return 0


async def watch(orchestrator: SyncOrchestrator, settings: Settings) -> None:
    config_path = settings.config_path
    last_config_mtime = get_config_file_mtime(config_path) if config_path else 0.0

    while True:
        try:
            _log_result(await orchestrator.run_if_due())
        except DNSSyncError as e:
            logger.error(f"Sync failed [{e.code}]: {e}")

        if config_path:
            current_mtime = get_config_file_mtime(config_path)
            if current_mtime != last_config_mtime:
                last_config_mtime = current_mtime
                logger.info(f"Config change detected in: {config_path}")
                try:
                    new_settings = load_settings()
                    errors = validate_settings(new_settings)
                    if errors:
                        raise ValueError("; ".join(errors))
                    reconfigure_orchestrator(orchestrator, new_settings)
                    settings = new_settings

                    logger.info("Triggering immediate sync after config reload")
                    _log_result(await orchestrator.run_cycle())
                except DNSSyncError as e:
                    logger.error(f"Sync failed [{e.code}]: {e}")
                except Exception as e:
                    logger.error(f"Failed to reload configuration: {e}", exc_info=True)
                    logger.warning("Continuing with previous configuration")

        await asyncio.sleep(max(MIN_POLL_SECONDS, settings.poll_interval_seconds))


# =============================================================================
# Main
# =============================================================================


def main() -> None:
    """Main entry point."""
    # Logging must be live before the config file loader runs.
    setup_logging(env_log_level())
    try:
        settings = load_settings()
    except DNSSyncError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(settings.log_level)
    logger.info("cloudsync-dns: Cloudflare -> ClouDNS")

    errors = validate_settings(settings)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    orchestrator = create_orchestrator(settings)
    logger.info(f"Zone: {settings.cloudns_domain_name}")
    logger.info(f"Sync mode: {settings.sync_mode}")
    logger.info(f"Run mode: {settings.run_mode}")
    if settings.run_mode == "watch":
        logger.info(f"Sync interval: {settings.sync_interval}s")

    for provider in (orchestrator.source, orchestrator.target):
        if not provider.test_connection():
            logger.error(f"Cannot connect to {provider.name}. Exiting.")
            sys.exit(1)

    try:
        if settings.run_mode == "once":
            sys.exit(asyncio.run(run_once(orchestrator)))
        asyncio.run(watch(orchestrator, settings))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
