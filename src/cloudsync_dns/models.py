"""Actions, modes and reports exchanged between the sync components."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .records import CanonicalRecord, ProviderRef

# =============================================================================
# Enums
# =============================================================================


class ActionKind(Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class SyncMode(Enum):
    """Which actions a cycle computes.

    FULL:          delete every target record, then add every source record.
    INCREMENTAL:   add missing records and update drifted ones; never delete.
    BIDIRECTIONAL: incremental plus deletion of target-only records, with
                   drifted pairs routed through the conflict resolver.
    """

    FULL = "full"
    INCREMENTAL = "incremental"
    BIDIRECTIONAL = "bidirectional"


class ConflictStrategy(Enum):
    SOURCE_WINS = "source_wins"
    TARGET_WINS = "target_wins"
    NEWEST_WINS = "newest_wins"


class ResultStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"


class CycleState(Enum):
    IDLE = "idle"
    RUNNING = "running"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class SyncModeConfig:
    mode: SyncMode = SyncMode.INCREMENTAL
    conflict_strategy: ConflictStrategy = ConflictStrategy.SOURCE_WINS


@dataclass(frozen=True)
class SyncAction:
    """One mutation against the target provider."""

    kind: ActionKind
    record: CanonicalRecord
    ref: Optional[ProviderRef] = None

    def __post_init__(self) -> None:
        if self.kind is ActionKind.ADD and self.ref is not None:
            raise ValueError("add actions never carry a provider ref")
        if self.kind is not ActionKind.ADD and self.ref is None:
            raise ValueError(f"{self.kind.value} actions require a provider ref")

    @classmethod
    def add(cls, record: CanonicalRecord) -> "SyncAction":
        return cls(ActionKind.ADD, record)

    @classmethod
    def update(cls, record: CanonicalRecord, ref: ProviderRef) -> "SyncAction":
        return cls(ActionKind.UPDATE, record, ref)

    @classmethod
    def delete(cls, record: CanonicalRecord) -> "SyncAction":
        return cls(ActionKind.DELETE, record, record.ref)


@dataclass(frozen=True)
class SyncResultEntry:
    action: ActionKind
    record_identity: str
    status: ResultStatus
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        record_type, _, name = self.record_identity.partition(" ")
        data: Dict[str, Any] = {
            "action": self.action.value,
            "type": record_type,
            "record": name,
            "status": self.status.value,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class SyncHistoryEntry:
    timestamp: str
    success: bool
    records_processed: Optional[int] = None
    details: List[SyncResultEntry] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"timestamp": self.timestamp, "success": self.success}
        if self.success:
            data["records_processed"] = self.records_processed
            data["details"] = [d.to_dict() for d in self.details]
        else:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class SyncReport:
    success: bool
    timestamp: str
    mode: SyncMode
    duration_ms: int
    results: List[SyncResultEntry] = field(default_factory=list)

    @property
    def synced_count(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> List[SyncResultEntry]:
        return [r for r in self.results if r.status is ResultStatus.FAILED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "synced_count": self.synced_count,
            "timestamp": self.timestamp,
            "mode": self.mode.value,
            "duration_ms": self.duration_ms,
            "details": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class SkippedResult:
    reason: str
    next_due: Optional[str] = None

    success = False

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "skipped": True, "message": self.reason, "next_due": self.next_due}
