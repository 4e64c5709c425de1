"""Conflict resolution for bidirectional sync."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence, Tuple

from .errors import ConfigurationError
from .models import ConflictStrategy, SyncAction
from .records import TTL_TOLERANCE_SECONDS, CanonicalRecord

logger = logging.getLogger(__name__)

ConflictPair = Tuple[CanonicalRecord, CanonicalRecord]

# TARGET_WINS would have to write back to the source provider and NEWEST_WINS
# needs modification times that ClouDNS does not expose.
SUPPORTED_STRATEGIES = frozenset({ConflictStrategy.SOURCE_WINS})


def record_differences(
    source: CanonicalRecord, target: CanonicalRecord
) -> Dict[str, Dict[str, Any]]:
    """Attributes that differ between a matched pair, as {attr: {source, target}}."""
    differences: Dict[str, Dict[str, Any]] = {}
    if source.content != target.content:
        differences["content"] = {"source": source.content, "target": target.content}
    if abs(source.ttl - target.ttl) > TTL_TOLERANCE_SECONDS:
        differences["ttl"] = {"source": source.ttl, "target": target.ttl}
    for key in sorted(set(source.type_fields) | set(target.type_fields)):
        if source.get(key) != target.get(key):
            differences[key] = {"source": source.get(key), "target": target.get(key)}
    return differences


class ConflictResolver:
    """Turns matched-but-different record pairs into target mutations."""

    def __init__(self, strategy: ConflictStrategy = ConflictStrategy.SOURCE_WINS):
        if strategy not in SUPPORTED_STRATEGIES:
            raise ConfigurationError(
                f"Conflict strategy '{strategy.value}' is not supported; "
                f"use '{ConflictStrategy.SOURCE_WINS.value}'",
                setting="CONFLICT_STRATEGY",
            )
        self.strategy = strategy

    def resolve(self, pairs: Sequence[ConflictPair]) -> List[SyncAction]:
        actions: List[SyncAction] = []
        for source, target in pairs:
            logger.info(
                f"Conflict on {source.identity}: {record_differences(source, target)}; "
                f"resolving with {self.strategy.value}"
            )
            actions.append(SyncAction.update(source, target.ref))
        return actions
