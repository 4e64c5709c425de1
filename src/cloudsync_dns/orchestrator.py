"""Sync orchestrator: drives one reconciliation cycle end to end.

    idle --run_cycle--> running --(report | error)--> idle

A cycle fetches both zones concurrently, plans the actions for the configured
mode, applies them one by one through the retry policy and records the
outcome. Fetch and plan errors abort the cycle and propagate to the caller;
failures of individual actions are recorded in the report and never abort
the remaining actions.

The running flag only guards this instance. Two orchestrators pointed at the
same zones can still overlap.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .errors import DNSSyncError
from .models import (
    ActionKind,
    CycleState,
    ResultStatus,
    SkippedResult,
    SyncAction,
    SyncHistoryEntry,
    SyncModeConfig,
    SyncReport,
    SyncResultEntry,
)
from .notify import NOTIFICATION_DETAIL_LIMIT, LoggingMetricsSink, Metric, MetricsSink, Notifier
from .planner import plan
from .progress import ProgressReporter
from .providers import SourceProvider, TargetProvider
from .records import CanonicalRecord, normalize_records
from .retry import RetryPolicy, Sleep

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10
DEFAULT_SYNC_INTERVAL_SECONDS = 3600

ALREADY_RUNNING = "sync already in progress"
NOT_DUE = "sync not due yet"

CycleResult = Union[SyncReport, SkippedResult]


def _isoformat(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _batches(actions: Sequence[SyncAction], width: int) -> Iterator[List[SyncAction]]:
    """Split actions into batches of at most `width` that never mix action kinds."""
    for _, group in itertools.groupby(actions, key=lambda a: a.kind):
        run = list(group)
        for start in range(0, len(run), width):
            yield run[start : start + width]


class SyncOrchestrator:
    def __init__(
        self,
        *,
        source: SourceProvider,
        target: TargetProvider,
        mode_config: SyncModeConfig = SyncModeConfig(),
        retry_policy: RetryPolicy = RetryPolicy(),
        notifier: Optional[Notifier] = None,
        metrics: Optional[MetricsSink] = None,
        progress: Optional[ProgressReporter] = None,
        apply_concurrency: int = 1,
        sync_interval: int = DEFAULT_SYNC_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Sleep] = None,
    ):
        self.source = source
        self.target = target
        self.mode_config = mode_config
        self.retry_policy = retry_policy
        self.notifier = notifier
        self.metrics = metrics or LoggingMetricsSink()
        self.progress = progress or ProgressReporter()
        self.apply_concurrency = max(1, apply_concurrency)
        self.sync_interval = sync_interval
        self._clock = clock
        self._sleep = sleep

        self.state = CycleState.IDLE
        self.last_sync_time: Optional[float] = None
        self._history: Deque[SyncHistoryEntry] = deque(maxlen=HISTORY_LIMIT)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self.state is CycleState.RUNNING

    @property
    def history(self) -> List[SyncHistoryEntry]:
        """Most recent first."""
        return list(self._history)

    def next_due(self, interval_seconds: Optional[int] = None) -> Optional[float]:
        if self.last_sync_time is None:
            return None
        interval = self.sync_interval if interval_seconds is None else interval_seconds
        return self.last_sync_time + interval

    def is_due(self, interval_seconds: Optional[int] = None) -> bool:
        due = self.next_due(interval_seconds)
        return due is None or self._clock() >= due

    def status(self) -> Dict[str, Any]:
        next_due = self.next_due()
        return {
            "last_sync": _isoformat(self.last_sync_time) if self.last_sync_time else None,
            "sync_in_progress": self.running,
            "next_scheduled_sync": _isoformat(next_due) if next_due else None,
            "history": [entry.to_dict() for entry in self._history],
            "config": {
                "sync_interval": self.sync_interval,
                "sync_mode": self.mode_config.mode.value,
                "conflict_strategy": self.mode_config.conflict_strategy.value,
                "apply_concurrency": self.apply_concurrency,
                "notifications": self.notifier is not None,
            },
        }

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def run_if_due(self, interval_seconds: Optional[int] = None) -> CycleResult:
        if not self.is_due(interval_seconds):
            return SkippedResult(NOT_DUE, next_due=_isoformat(self.next_due(interval_seconds)))
        return await self.run_cycle()

    async def run_cycle(self) -> CycleResult:
        if self.running:
            logger.info("Sync already in progress, skipping")
            return SkippedResult(ALREADY_RUNNING)

        self.state = CycleState.RUNNING
        started = self._clock()
        self.progress.reset()
        logger.info(
            f"Starting {self.mode_config.mode.value} sync: {self.source.name} -> {self.target.name}"
        )
        try:
            try:
                source_records, target_records = await self._fetch()
                self.progress.publish(status="planning", percentage=30, message="Planning changes")
                actions = plan(source_records, target_records, self.mode_config)
            except Exception as e:
                await self._record_failure(e, started)
                raise

            results = await self._apply(actions)
            return await self._record_success(results, started, len(source_records))
        finally:
            self.state = CycleState.IDLE

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def _fetch(self) -> Tuple[List[CanonicalRecord], List[CanonicalRecord]]:
        self.progress.publish(
            status="fetching",
            percentage=10,
            message=f"Fetching records from {self.source.name} and {self.target.name}",
        )
        raw_source, raw_target = await asyncio.gather(
            asyncio.to_thread(self.source.fetch_all),
            asyncio.to_thread(self.target.fetch_all),
        )
        source_records = normalize_records(raw_source, self.source.normalize)
        target_records = normalize_records(raw_target, self.target.normalize)
        logger.info(
            f"Fetched {len(source_records)} {self.source.name} and "
            f"{len(target_records)} {self.target.name} record(s)"
        )
        return source_records, target_records

    def _mutate(self, action: SyncAction) -> None:
        if action.kind is ActionKind.ADD:
            self.target.add(action.record)
        elif action.kind is ActionKind.UPDATE:
            self.target.update(action.ref, action.record)
        else:
            self.target.delete(action.ref)

    async def _apply_one(self, action: SyncAction) -> SyncResultEntry:
        identity = action.record.identity
        try:
            await self.retry_policy.run(
                lambda: asyncio.to_thread(self._mutate, action),
                sleep=self._sleep,
                label=f"{action.kind.value} {identity}",
            )
        except Exception as e:
            logger.error(f"Failed to {action.kind.value} {identity}: {e}")
            return SyncResultEntry(action.kind, identity, ResultStatus.FAILED, str(e))
        return SyncResultEntry(action.kind, identity, ResultStatus.SUCCESS)

    async def _apply(self, actions: Sequence[SyncAction]) -> List[SyncResultEntry]:
        total = len(actions)
        results: List[SyncResultEntry] = []
        if self.apply_concurrency == 1:
            batches: Iterator[List[SyncAction]] = ([a] for a in actions)
        else:
            batches = _batches(actions, self.apply_concurrency)

        for batch in batches:
            results.extend(await asyncio.gather(*(self._apply_one(a) for a in batch)))
            self.progress.publish(
                status="applying",
                percentage=30 + int(65 * len(results) / total),
                message=f"Applied {len(results)}/{total} change(s)",
            )
        return results

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    async def _record_success(
        self, results: List[SyncResultEntry], started: float, source_count: int
    ) -> SyncReport:
        finished = self._clock()
        self.last_sync_time = finished
        timestamp = _isoformat(finished)
        duration_ms = int((finished - started) * 1000)

        self._history.appendleft(
            SyncHistoryEntry(
                timestamp=timestamp,
                success=True,
                records_processed=len(results),
                details=list(results),
            )
        )
        report = SyncReport(
            success=True,
            timestamp=timestamp,
            mode=self.mode_config.mode,
            duration_ms=duration_ms,
            results=list(results),
        )

        await self._notify(
            {
                "type": "sync_complete",
                "success": True,
                "timestamp": timestamp,
                "records_processed": len(results),
                "details": [r.to_dict() for r in results[:NOTIFICATION_DETAIL_LIMIT]],
            }
        )
        self._track(duration_ms, True, len(results), source_records=source_count)
        self.progress.complete(
            f"Processed {len(results)} change(s)", failed=len(report.failed)
        )
        logger.info(
            f"Sync complete: {len(results)} change(s), {len(report.failed)} failed, {duration_ms}ms"
        )
        return report

    async def _record_failure(self, error: Exception, started: float) -> None:
        finished = self._clock()
        timestamp = _isoformat(finished)
        self._history.appendleft(
            SyncHistoryEntry(timestamp=timestamp, success=False, error=str(error))
        )
        await self._notify(
            {
                "type": "sync_failed",
                "success": False,
                "timestamp": timestamp,
                "error": str(error),
            }
        )
        code = error.code if isinstance(error, DNSSyncError) else type(error).__name__
        self._track(int((finished - started) * 1000), False, 0, error=code)
        self.progress.fail(error)
        logger.error(f"Sync failed: {error}")

    async def _notify(self, payload: Dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            await asyncio.to_thread(self.notifier.send, payload)
        except Exception as e:
            logger.error(f"Notification delivery failed: {e}")

    def _track(self, duration_ms: int, success: bool, processed: int, **tags: Any) -> None:
        timestamp = self._clock()
        tags = {"mode": self.mode_config.mode.value, **tags}
        for metric in (
            Metric("sync_duration_ms", duration_ms, timestamp, {"success": success, **tags}),
            Metric("sync_success", 1 if success else 0, timestamp, tags),
            Metric("sync_records_processed", processed, timestamp, tags),
        ):
            try:
                self.metrics.record(metric)
            except Exception as e:
                logger.warning(f"Failed to record metric {metric.name}: {e}")
