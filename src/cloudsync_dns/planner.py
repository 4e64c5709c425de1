"""Diff planner: turns two canonical record sets into an ordered action list."""

from __future__ import annotations

import logging
from typing import List, Sequence, Set

from .conflicts import ConflictPair, ConflictResolver
from .models import SyncAction, SyncMode, SyncModeConfig
from .records import CanonicalRecord, equivalent, find_match_index, needs_update

logger = logging.getLogger(__name__)


def plan_full(
    source: Sequence[CanonicalRecord], target: Sequence[CanonicalRecord]
) -> List[SyncAction]:
    """Delete everything on the target, then add everything from the source.

    The target zone is incomplete between the last delete and the last add.
    """
    actions = [SyncAction.delete(record) for record in target]
    actions.extend(SyncAction.add(record) for record in source)
    return actions


def plan_incremental(
    source: Sequence[CanonicalRecord], target: Sequence[CanonicalRecord]
) -> List[SyncAction]:
    actions: List[SyncAction] = []
    claimed: Set[int] = set()
    for record in source:
        index = find_match_index(record, target, claimed)
        if index is None:
            actions.append(SyncAction.add(record))
            continue
        claimed.add(index)
        existing = target[index]
        if needs_update(record, existing):
            actions.append(SyncAction.update(record, existing.ref))
    return actions


def plan_bidirectional(
    source: Sequence[CanonicalRecord],
    target: Sequence[CanonicalRecord],
    resolver: ConflictResolver,
) -> List[SyncAction]:
    adds: List[SyncAction] = []
    conflicts: List[ConflictPair] = []
    claimed: Set[int] = set()

    for record in source:
        index = find_match_index(record, target, claimed)
        if index is None:
            adds.append(SyncAction.add(record))
            continue
        claimed.add(index)
        if not equivalent(record, target[index]):
            conflicts.append((record, target[index]))

    deletes = [
        SyncAction.delete(record) for index, record in enumerate(target) if index not in claimed
    ]
    return adds + resolver.resolve(conflicts) + deletes


def plan(
    source: Sequence[CanonicalRecord],
    target: Sequence[CanonicalRecord],
    config: SyncModeConfig,
) -> List[SyncAction]:
    """Compute the actions that bring `target` in line with `source`."""
    if config.mode is SyncMode.FULL:
        actions = plan_full(source, target)
    elif config.mode is SyncMode.INCREMENTAL:
        actions = plan_incremental(source, target)
    elif config.mode is SyncMode.BIDIRECTIONAL:
        actions = plan_bidirectional(source, target, ConflictResolver(config.conflict_strategy))
    else:
        raise ValueError(f"Unknown sync mode: {config.mode}")

    logger.debug(
        f"Planned {len(actions)} action(s) in {config.mode.value} mode "
        f"({len(source)} source, {len(target)} target records)"
    )
    return actions
