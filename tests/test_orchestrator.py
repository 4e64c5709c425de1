"""Unit tests for SyncOrchestrator."""

import asyncio
import threading
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from cloudsync_dns.errors import (
    ConfigurationError,
    PermanentProviderError,
    TransientProviderError,
)
from cloudsync_dns.models import (
    ActionKind,
    ConflictStrategy,
    CycleState,
    ResultStatus,
    SkippedResult,
    SyncAction,
    SyncMode,
    SyncModeConfig,
    SyncReport,
)
from cloudsync_dns.notify import Metric, MetricsSink
from cloudsync_dns.orchestrator import (
    ALREADY_RUNNING,
    HISTORY_LIMIT,
    NOT_DUE,
    SyncOrchestrator,
    _batches,
)
from cloudsync_dns.providers import SourceProvider, TargetProvider
from cloudsync_dns.records import (
    CanonicalRecord,
    ProviderRef,
    normalize_cloudflare,
    normalize_cloudns,
    to_relative_host,
)
from cloudsync_dns.retry import RetryPolicy

ZONE = "example.com"

# =============================================================================
# Fakes
# =============================================================================


class Clock:
    """Deterministic clock advancing by `step` seconds on every read."""

    def __init__(self, start: float = 1_700_000_000.0, step: float = 0.5) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


class FakeSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeCloudflare(SourceProvider):
    def __init__(self, records: List[Dict[str, Any]], error: Optional[Exception] = None) -> None:
        self.records = records
        self.error = error
        self.fetch_count = 0
        self.release: Optional[threading.Event] = None

    @property
    def name(self) -> str:
        return "Cloudflare"

    @property
    def zone(self) -> str:
        return ZONE

    def test_connection(self) -> bool:
        return True

    def fetch_all(self) -> List[Dict[str, Any]]:
        self.fetch_count += 1
        if self.release is not None:
            self.release.wait(5)
        if self.error is not None:
            raise self.error
        return list(self.records)

    def normalize(self, raw: Any) -> CanonicalRecord:
        return normalize_cloudflare(raw, ZONE)


class FakeClouDNS(TargetProvider):
    """In-memory ClouDNS zone recording every mutation."""

    def __init__(
        self, records: Optional[List[Dict[str, Any]]] = None, error: Optional[Exception] = None
    ) -> None:
        self.records: Dict[str, Dict[str, Any]] = {
            r.get("id") or f"row-{i}": r for i, r in enumerate(records or [])
        }
        self.error = error
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self._next_id = 1000
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "ClouDNS"

    @property
    def zone(self) -> str:
        return ZONE

    def test_connection(self) -> bool:
        return True

    def fetch_all(self) -> List[Dict[str, Any]]:
        if self.error is not None:
            raise self.error
        return list(self.records.values())

    def normalize(self, raw: Any) -> CanonicalRecord:
        return normalize_cloudns(raw, ZONE)

    def fail(self, identity: str, *errors: Exception) -> None:
        """Raise `errors` in turn on the next mutations of `identity`."""
        self.failures[identity] = list(errors)

    def _check(self, kind: str, record_identity: str) -> None:
        self.calls.append((kind, record_identity))
        pending = self.failures.get(record_identity)
        if pending:
            raise pending.pop(0)

    def _raw(self, record_id: str, record: CanonicalRecord) -> Dict[str, Any]:
        raw = {
            "id": record_id,
            "type": record.type,
            "host": to_relative_host(record.name, ZONE),
            "record": record.content,
            "ttl": str(record.ttl),
        }
        raw.update({k: str(v) for k, v in record.type_fields.items()})
        return raw

    def add(self, record: CanonicalRecord) -> ProviderRef:
        self._check("add", record.identity)
        with self._lock:
            self._next_id += 1
            record_id = str(self._next_id)
        self.records[record_id] = self._raw(record_id, record)
        return ProviderRef(record_id)

    def update(self, ref: ProviderRef, record: CanonicalRecord) -> None:
        self._check("update", record.identity)
        self.records[ref.id] = self._raw(ref.id, record)

    def delete(self, ref: ProviderRef) -> None:
        raw = self.records[ref.id]
        self._check("delete", self.normalize(raw).identity)
        del self.records[ref.id]


class ListMetricsSink(MetricsSink):
    def __init__(self) -> None:
        self.metrics: List[Metric] = []

    def record(self, metric: Metric) -> None:
        self.metrics.append(metric)


def cf(name: str, content: str = "192.0.2.1", rtype: str = "A", ttl: int = 300, **extra: Any):
    return {"id": f"cf-{name}-{content}", "type": rtype, "name": name, "content": content, "ttl": ttl, **extra}


def cd(record_id: str, host: str, content: str = "192.0.2.1", rtype: str = "A", ttl: int = 300, **extra: Any):
    return {"id": record_id, "type": rtype, "host": host, "record": content, "ttl": str(ttl), **extra}


def make_orchestrator(
    source: SourceProvider,
    target: TargetProvider,
    mode: SyncMode = SyncMode.INCREMENTAL,
    **kwargs: Any,
) -> SyncOrchestrator:
    kwargs.setdefault("clock", Clock())
    kwargs.setdefault("sleep", FakeSleep())
    kwargs.setdefault("metrics", ListMetricsSink())
    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, base_delay=1.0))
    return SyncOrchestrator(
        source=source, target=target, mode_config=SyncModeConfig(mode=mode), **kwargs
    )


# =============================================================================
# Cycle Outcomes
# =============================================================================


class TestRunCycle:
    """Tests for a complete sync cycle."""

    def test_incremental_adds_missing_and_updates_drift(self) -> None:
        source = FakeCloudflare(
            [
                cf("www.example.com", "192.0.2.1"),
                cf("api.example.com", "192.0.2.2"),
                cf("example.com", "mx.example.com", "MX", priority=10),
            ]
        )
        target = FakeClouDNS(
            [
                cd("1", "www", "192.0.2.1"),
                cd("2", "", "mx.example.com", "MX", priority="20"),
                cd("3", "legacy", "192.0.2.200"),
            ]
        )
        orchestrator = make_orchestrator(source, target)

        report = asyncio.run(orchestrator.run_cycle())

        assert isinstance(report, SyncReport)
        assert report.success is True
        assert report.mode is SyncMode.INCREMENTAL
        assert target.calls == [("add", "A api.example.com"), ("update", "MX example.com")]
        assert target.records["2"]["priority"] == "10"
        assert "3" in target.records
        assert [r.status for r in report.results] == [ResultStatus.SUCCESS] * 2
        assert orchestrator.last_sync_time is not None

    def test_second_cycle_is_noop(self) -> None:
        """Once the target matches, incremental sync plans nothing."""
        source = FakeCloudflare([cf("www.example.com"), cf("example.com", "mx.example.com", "MX", priority=10)])
        target = FakeClouDNS()
        orchestrator = make_orchestrator(source, target)

        asyncio.run(orchestrator.run_cycle())
        target.calls.clear()
        report = asyncio.run(orchestrator.run_cycle())

        assert report.results == []
        assert target.calls == []

    def test_full_mode_rewrites_target(self) -> None:
        source = FakeCloudflare([cf("a.example.com")])
        target = FakeClouDNS([cd("1", "b"), cd("2", "c")])
        orchestrator = make_orchestrator(source, target, mode=SyncMode.FULL)

        asyncio.run(orchestrator.run_cycle())

        assert target.calls == [
            ("delete", "A b.example.com"),
            ("delete", "A c.example.com"),
            ("add", "A a.example.com"),
        ]
        assert [r["host"] for r in target.records.values()] == ["a"]

    def test_bidirectional_removes_target_only_records(self) -> None:
        source = FakeCloudflare([cf("www.example.com", "192.0.2.1")])
        target = FakeClouDNS([cd("1", "www", "192.0.2.99"), cd("2", "stale")])
        orchestrator = make_orchestrator(source, target, mode=SyncMode.BIDIRECTIONAL)

        asyncio.run(orchestrator.run_cycle())

        assert target.calls == [("update", "A www.example.com"), ("delete", "A stale.example.com")]
        assert list(target.records) == ["1"]
        assert target.records["1"]["record"] == "192.0.2.1"

    def test_unsupported_and_malformed_records_are_ignored(self) -> None:
        source = FakeCloudflare(
            [
                cf("www.example.com"),
                {"id": "x", "type": "HTTPS", "name": "example.com", "content": "1 .", "ttl": 300},
                {"id": "y", "type": "MX", "name": "example.com", "content": "mx.example.com", "ttl": 300},
            ]
        )
        target = FakeClouDNS()
        orchestrator = make_orchestrator(source, target)

        report = asyncio.run(orchestrator.run_cycle())

        assert [(r.action, r.record_identity) for r in report.results] == [
            (ActionKind.ADD, "A www.example.com")
        ]

    @pytest.mark.parametrize("mode", [SyncMode.FULL, SyncMode.BIDIRECTIONAL])
    def test_target_rows_without_id_are_ignored(self, mode: SyncMode) -> None:
        """Rows that cannot be addressed are neither deleted nor matched."""
        source = FakeCloudflare([cf("www.example.com", "192.0.2.1")])
        ghost = {"type": "A", "host": "www", "record": "192.0.2.99", "ttl": "300"}
        target = FakeClouDNS([ghost, cd("1", "stale")])
        orchestrator = make_orchestrator(source, target, mode=mode)

        report = asyncio.run(orchestrator.run_cycle())

        assert report.success is True
        assert report.failed == []
        assert ("delete", "A stale.example.com") in target.calls
        assert ("add", "A www.example.com") in target.calls
        assert target.records["row-0"] is ghost


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    """Tests for cycle and per-action failures."""

    def test_fetch_failure_propagates_and_is_recorded(self) -> None:
        error = TransientProviderError("Cloudflare unavailable", provider="cloudflare", status=503)
        notifier = MagicMock()
        metrics = ListMetricsSink()
        orchestrator = make_orchestrator(
            FakeCloudflare([], error=error), FakeClouDNS(), notifier=notifier, metrics=metrics
        )

        with pytest.raises(TransientProviderError) as exc:
            asyncio.run(orchestrator.run_cycle())

        assert exc.value is error
        assert orchestrator.running is False
        assert orchestrator.last_sync_time is None
        assert orchestrator.history[0].success is False
        assert orchestrator.history[0].error == "Cloudflare unavailable"
        assert orchestrator.progress.state["status"] == "failed"
        payload = notifier.send.call_args.args[0]
        assert payload["type"] == "sync_failed"
        assert payload["error"] == "Cloudflare unavailable"
        success_metric = next(m for m in metrics.metrics if m.name == "sync_success")
        assert success_metric.value == 0
        assert success_metric.tags["error"] == "transient"

    def test_target_fetch_failure_propagates(self) -> None:
        error = PermanentProviderError("Invalid domain-name", provider="cloudns", status=200)
        source = FakeCloudflare([cf("a.example.com")])
        target = FakeClouDNS(error=error)
        orchestrator = make_orchestrator(source, target)

        with pytest.raises(PermanentProviderError) as exc:
            asyncio.run(orchestrator.run_cycle())

        assert exc.value is error
        assert target.calls == []
        assert orchestrator.state is CycleState.IDLE
        assert orchestrator.history[0].success is False
        assert orchestrator.history[0].error == "Invalid domain-name"

    def test_unsupported_conflict_strategy_aborts_before_mutations(self) -> None:
        source = FakeCloudflare([cf("www.example.com", "192.0.2.1"), cf("new.example.com")])
        target = FakeClouDNS([cd("1", "www", "192.0.2.99"), cd("2", "stale")])
        notifier = MagicMock()
        orchestrator = make_orchestrator(source, target, notifier=notifier)
        orchestrator.mode_config = SyncModeConfig(
            mode=SyncMode.BIDIRECTIONAL, conflict_strategy=ConflictStrategy.TARGET_WINS
        )

        with pytest.raises(ConfigurationError) as exc:
            asyncio.run(orchestrator.run_cycle())

        assert exc.value.setting == "CONFLICT_STRATEGY"
        assert target.calls == []
        assert set(target.records) == {"1", "2"}
        assert orchestrator.state is CycleState.IDLE
        assert orchestrator.last_sync_time is None
        assert orchestrator.history[0].success is False
        assert notifier.send.call_args.args[0]["type"] == "sync_failed"

    def test_action_failure_does_not_abort_cycle(self) -> None:
        """A rejected record is reported while the remaining actions still run."""
        source = FakeCloudflare([cf("a.example.com"), cf("b.example.com"), cf("c.example.com")])
        target = FakeClouDNS()
        target.fail("A b.example.com", PermanentProviderError("Invalid record", status=200))
        sleep = FakeSleep()
        orchestrator = make_orchestrator(source, target, sleep=sleep)

        report = asyncio.run(orchestrator.run_cycle())

        assert report.success is True
        assert [(r.record_identity, r.status) for r in report.results] == [
            ("A a.example.com", ResultStatus.SUCCESS),
            ("A b.example.com", ResultStatus.FAILED),
            ("A c.example.com", ResultStatus.SUCCESS),
        ]
        assert report.failed[0].error == "Invalid record"
        assert target.calls.count(("add", "A b.example.com")) == 1
        assert sleep.delays == []
        assert orchestrator.history[0].success is True

    def test_transient_action_failure_is_retried(self) -> None:
        source = FakeCloudflare([cf("a.example.com")])
        target = FakeClouDNS()
        target.fail(
            "A a.example.com",
            TransientProviderError("busy", status=503),
            TransientProviderError("busy", status=503),
        )
        sleep = FakeSleep()
        orchestrator = make_orchestrator(source, target, sleep=sleep)

        report = asyncio.run(orchestrator.run_cycle())

        assert report.failed == []
        assert target.calls.count(("add", "A a.example.com")) == 3
        assert sleep.delays == [1.0, 2.0]

    def test_retries_exhausted_marks_action_failed(self) -> None:
        source = FakeCloudflare([cf("a.example.com")])
        target = FakeClouDNS()
        target.fail("A a.example.com", *[TransientProviderError("busy", status=503)] * 3)
        orchestrator = make_orchestrator(source, target)

        report = asyncio.run(orchestrator.run_cycle())

        assert len(report.failed) == 1
        assert target.records == {}


# =============================================================================
# Concurrency Guard
# =============================================================================


def test_concurrent_cycle_is_skipped() -> None:
    """A second cycle started while one is running returns immediately."""
    source = FakeCloudflare([cf("a.example.com")])
    source.release = threading.Event()
    target = FakeClouDNS()
    orchestrator = make_orchestrator(source, target)

    async def scenario():
        first = asyncio.create_task(orchestrator.run_cycle())
        await asyncio.sleep(0)
        assert orchestrator.running is True
        second = await orchestrator.run_cycle()
        source.release.set()
        return await first, second

    first, second = asyncio.run(scenario())

    assert isinstance(second, SkippedResult)
    assert second.reason == ALREADY_RUNNING
    assert second.success is False
    assert isinstance(first, SyncReport)
    assert source.fetch_count == 1
    assert len(orchestrator.history) == 1
    assert orchestrator.running is False


# =============================================================================
# History and Scheduling
# =============================================================================


class TestHistory:
    """Tests for history retention and scheduling."""

    def test_history_keeps_ten_most_recent_first(self) -> None:
        orchestrator = make_orchestrator(FakeCloudflare([]), FakeClouDNS(), clock=Clock(step=1.0))

        for _ in range(HISTORY_LIMIT + 1):
            asyncio.run(orchestrator.run_cycle())

        timestamps = [entry.timestamp for entry in orchestrator.history]
        assert len(timestamps) == HISTORY_LIMIT
        assert timestamps == sorted(timestamps, reverse=True)
        assert len(set(timestamps)) == HISTORY_LIMIT

    def test_run_if_due(self) -> None:
        clock = Clock(step=0)
        orchestrator = make_orchestrator(
            FakeCloudflare([]), FakeClouDNS(), clock=clock, sync_interval=3600
        )

        first = asyncio.run(orchestrator.run_if_due())
        clock.now += 60
        second = asyncio.run(orchestrator.run_if_due())
        clock.now += 3600
        third = asyncio.run(orchestrator.run_if_due())

        assert isinstance(first, SyncReport)
        assert isinstance(second, SkippedResult)
        assert second.reason == NOT_DUE
        assert second.next_due is not None
        assert isinstance(third, SyncReport)
        assert len(orchestrator.history) == 2

    def test_status(self) -> None:
        orchestrator = make_orchestrator(FakeCloudflare([cf("a.example.com")]), FakeClouDNS())
        assert orchestrator.status()["last_sync"] is None

        asyncio.run(orchestrator.run_cycle())
        status = orchestrator.status()

        assert status["sync_in_progress"] is False
        assert status["last_sync"] is not None
        assert status["next_scheduled_sync"] is not None
        assert status["config"]["sync_mode"] == "incremental"
        assert status["history"][0]["records_processed"] == 1
        assert status["history"][0]["details"][0] == {
            "action": "add",
            "type": "A",
            "record": "a.example.com",
            "status": "success",
        }


# =============================================================================
# Collaborators
# =============================================================================


class TestCollaborators:
    """Tests for notifications, metrics and progress."""

    def test_completion_notification_caps_details(self) -> None:
        source = FakeCloudflare([cf(f"h{i}.example.com") for i in range(7)])
        notifier = MagicMock()
        orchestrator = make_orchestrator(source, FakeClouDNS(), notifier=notifier)

        asyncio.run(orchestrator.run_cycle())

        payload = notifier.send.call_args.args[0]
        assert payload["type"] == "sync_complete"
        assert payload["success"] is True
        assert payload["records_processed"] == 7
        assert len(payload["details"]) == 5

    def test_notifier_failure_is_ignored(self) -> None:
        notifier = MagicMock()
        notifier.send.side_effect = RuntimeError("webhook down")
        orchestrator = make_orchestrator(FakeCloudflare([]), FakeClouDNS(), notifier=notifier)

        report = asyncio.run(orchestrator.run_cycle())

        assert report.success is True

    def test_metrics_emitted_with_mode_tag(self) -> None:
        metrics = ListMetricsSink()
        orchestrator = make_orchestrator(
            FakeCloudflare([cf("a.example.com")]), FakeClouDNS(), metrics=metrics
        )

        asyncio.run(orchestrator.run_cycle())

        by_name = {m.name: m for m in metrics.metrics}
        assert set(by_name) == {"sync_duration_ms", "sync_success", "sync_records_processed"}
        assert by_name["sync_success"].value == 1
        assert by_name["sync_records_processed"].value == 1
        assert by_name["sync_duration_ms"].tags["mode"] == "incremental"

    def test_progress_ends_completed(self) -> None:
        orchestrator = make_orchestrator(
            FakeCloudflare([cf("a.example.com"), cf("b.example.com")]), FakeClouDNS()
        )
        seen: List[Dict[str, Any]] = []
        orchestrator.progress.subscribe(seen.append)

        asyncio.run(orchestrator.run_cycle())

        percentages = [s["percentage"] for s in seen]
        assert percentages == sorted(percentages)
        assert seen[-1]["status"] == "completed"
        assert seen[-1]["percentage"] == 100


# =============================================================================
# Batched Apply
# =============================================================================


def test_batches_never_mix_kinds() -> None:
    record = CanonicalRecord("A", "a.example.com", "192.0.2.1", 300, ref=ProviderRef("1"))
    actions = [SyncAction.delete(record)] * 3 + [SyncAction.add(record)] * 2

    batches = list(_batches(actions, 2))

    assert [[a.kind for a in batch] for batch in batches] == [
        [ActionKind.DELETE, ActionKind.DELETE],
        [ActionKind.DELETE],
        [ActionKind.ADD, ActionKind.ADD],
    ]


def test_concurrent_apply_keeps_result_order() -> None:
    source = FakeCloudflare([cf(f"h{i}.example.com") for i in range(5)])
    target = FakeClouDNS([cd("1", "old")])
    orchestrator = make_orchestrator(
        source, target, mode=SyncMode.FULL, apply_concurrency=3
    )

    report = asyncio.run(orchestrator.run_cycle())

    assert [r.record_identity for r in report.results] == ["A old.example.com"] + [
        f"A h{i}.example.com" for i in range(5)
    ]
    assert report.failed == []
    assert len(target.records) == 5
