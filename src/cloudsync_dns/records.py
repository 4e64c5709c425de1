"""Canonical DNS record model, provider normalizers and record matching.

Both providers describe the same DNS data with different schemas:

    Cloudflare   {"id", "type", "name": "www.example.com", "content", "ttl",
                  "priority", "data": {...}}
    ClouDNS      {"id", "type", "host": "www" | "" | "@", "record", "ttl",
                  "priority", "weight", "port", "caa_flag", ...}

Records from either side are normalized into a CanonicalRecord with an
absolute lower-case name and a validated `type_fields` mapping, so matching and
planning never look at provider payloads again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import MalformedResponseError

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

SUPPORTED_RECORD_TYPES = frozenset(
    {
        "A",
        "AAAA",
        "CNAME",
        "TXT",
        "MX",
        "NS",
        "SRV",
        "CAA",
        "PTR",
        "DNSKEY",
        "DS",
        "NAPTR",
        "SMIMEA",
        "SSHFP",
        "TLSA",
        "URI",
    }
)

# Extra attributes per record type, with the type each value is coerced to.
TYPE_FIELDS: Dict[str, Tuple[Tuple[str, type], ...]] = {
    "MX": (("priority", int),),
    "SRV": (("priority", int), ("weight", int), ("port", int)),
    "CAA": (("flags", int), ("tag", str)),
    "NAPTR": (
        ("order", int),
        ("preference", int),
        ("flags", str),
        ("service", str),
        ("regexp", str),
    ),
}

# Only these fields take part in equivalence and update decisions.
COMPARED_FIELDS: Dict[str, Tuple[str, ...]] = {
    "MX": ("priority",),
    "SRV": ("priority", "weight", "port"),
}

TTL_TOLERANCE_SECONDS = 60

# Cloudflare reports "automatic" TTL as 1, which it serves as 300 seconds.
CLOUDFLARE_AUTO_TTL = 1
CLOUDFLARE_AUTO_TTL_SECONDS = 300

ROOT_MARKERS = ("", "@")

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ProviderRef:
    """Provider-assigned identifier plus the raw record, used for mutations only."""

    id: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class CanonicalRecord:
    """Provider-independent DNS record."""

    type: str
    name: str
    content: str
    ttl: int
    type_fields: Dict[str, Any] = field(default_factory=dict, hash=False)
    ref: Optional[ProviderRef] = field(default=None, compare=False, repr=False)

    @property
    def identity(self) -> str:
        return f"{self.type} {self.name}"

    def get(self, key: str, default: Any = None) -> Any:
        return self.type_fields.get(key, default)


# =============================================================================
# Hostname Helpers
# =============================================================================


def canonical_name(name: str) -> str:
    """Lower-case, trimmed, without the trailing root dot."""
    return name.strip().rstrip(".").lower()


def absolute_name(host: str, zone: str) -> str:
    """Turn a ClouDNS relative host into a fully qualified name."""
    zone = canonical_name(zone)
    host = host.strip()
    if host in ROOT_MARKERS:
        return zone
    if host.endswith("."):
        return canonical_name(host)
    return f"{canonical_name(host)}.{zone}"


def to_relative_host(name: str, zone: str) -> str:
    """Reverse of absolute_name: the apex becomes "" and subdomains lose the zone."""
    name = canonical_name(name)
    zone = canonical_name(zone)
    if name == zone:
        return ""
    suffix = f".{zone}"
    if name.endswith(suffix):
        return name[: -len(suffix)]
    return name


def hostnames_equivalent(a: str, b: str) -> bool:
    return canonical_name(a) == canonical_name(b)


# =============================================================================
# Normalization
# =============================================================================


def _require(raw: Dict[str, Any], key: str, provider: str) -> Any:
    value = raw.get(key)
    if value is None:
        raise MalformedResponseError(
            f"{provider} record {raw.get('id', '?')} is missing '{key}'",
            provider=provider,
            payload_type="record",
        )
    return value


def _coerce_ttl(value: Any, provider: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedResponseError(
            f"{provider} record has non-numeric ttl: {value!r}",
            provider=provider,
            payload_type="record",
        ) from None


def _validate_type_fields(
    rtype: str, values: Dict[str, Any], provider: str
) -> Dict[str, Any]:
    """Coerce extra fields for `rtype` to their schema types."""
    validated: Dict[str, Any] = {}
    for key, kind in TYPE_FIELDS.get(rtype, ()):
        value = values.get(key)
        if kind is str:
            validated[key] = "" if value is None else str(value)
            continue
        if value is None or value == "":
            raise MalformedResponseError(
                f"{provider} {rtype} record is missing '{key}'",
                provider=provider,
                payload_type="record",
            )
        try:
            validated[key] = int(value)
        except (TypeError, ValueError):
            raise MalformedResponseError(
                f"{provider} {rtype} record has invalid '{key}': {value!r}",
                provider=provider,
                payload_type="record",
            ) from None
    return validated


def _check_mapping(raw: Any, provider: str) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise MalformedResponseError(
            f"Expected {provider} record object, got {type(raw).__name__}",
            provider=provider,
            payload_type=type(raw).__name__,
        )
    return raw


def normalize_cloudflare(raw: Any, zone: str) -> CanonicalRecord:
    """Normalize a Cloudflare `dns_records` entry."""
    raw = _check_mapping(raw, "cloudflare")
    rtype = str(_require(raw, "type", "cloudflare")).upper()
    name = canonical_name(str(_require(raw, "name", "cloudflare")))
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}

    # Structured types keep their target/value in `data`; `content` is the
    # presentation form that ClouDNS never returns.
    content = raw.get("content")
    if rtype == "SRV" and data.get("target"):
        content = data["target"]
    elif rtype == "CAA" and data.get("value") is not None:
        content = data["value"]
    elif rtype == "NAPTR" and data.get("replacement") is not None:
        content = data["replacement"]
    if content is None:
        raise MalformedResponseError(
            f"cloudflare record {raw.get('id', '?')} is missing 'content'",
            provider="cloudflare",
            payload_type="record",
        )

    ttl = _coerce_ttl(_require(raw, "ttl", "cloudflare"), "cloudflare")
    if ttl == CLOUDFLARE_AUTO_TTL:
        ttl = CLOUDFLARE_AUTO_TTL_SECONDS

    extra = {
        "priority": raw.get("priority", data.get("priority")),
        "weight": data.get("weight"),
        "port": data.get("port"),
        "flags": data.get("flags"),
        "tag": data.get("tag"),
        "order": data.get("order"),
        "preference": data.get("preference"),
        "service": data.get("service"),
        "regexp": data.get("regex"),
    }
    if rtype == "SRV" and data.get("priority") is not None:
        extra["priority"] = data["priority"]

    ref = ProviderRef(id=str(raw["id"]), raw=raw) if raw.get("id") is not None else None
    return CanonicalRecord(
        type=rtype,
        name=name,
        content=str(content).strip(),
        ttl=ttl,
        type_fields=_validate_type_fields(rtype, extra, "cloudflare"),
        ref=ref,
    )


def normalize_cloudns(raw: Any, zone: str) -> CanonicalRecord:
    """Normalize a ClouDNS `records.json` entry."""
    raw = _check_mapping(raw, "cloudns")
    # Target rows are only useful with an id: every mutation addresses it.
    record_id = _require(raw, "id", "cloudns")
    rtype = str(_require(raw, "type", "cloudns")).upper()
    host = str(raw.get("host") or "")
    content = raw.get("record")
    if rtype == "CAA" and not content:
        content = raw.get("caa_value")
    if content is None:
        raise MalformedResponseError(
            f"cloudns record {raw.get('id', '?')} is missing 'record'",
            provider="cloudns",
            payload_type="record",
        )

    extra = {
        "priority": raw.get("priority"),
        "weight": raw.get("weight"),
        "port": raw.get("port"),
        "flags": raw.get("caa_flag"),
        "tag": raw.get("caa_type"),
        "order": raw.get("order"),
        "preference": raw.get("pref"),
        "service": raw.get("params"),
        "regexp": raw.get("regexp"),
    }
    if rtype == "NAPTR":
        extra["flags"] = raw.get("flag")

    return CanonicalRecord(
        type=rtype,
        name=absolute_name(host, zone),
        content=str(content).strip(),
        ttl=_coerce_ttl(_require(raw, "ttl", "cloudns"), "cloudns"),
        type_fields=_validate_type_fields(rtype, extra, "cloudns"),
        ref=ProviderRef(id=str(record_id), raw=raw),
    )


def normalize_records(
    raws: Iterable[Any], normalize: Callable[[Any], CanonicalRecord]
) -> List[CanonicalRecord]:
    """Normalize a provider listing, skipping unsupported and malformed entries."""
    records: List[CanonicalRecord] = []
    for raw in raws:
        rtype = str(raw.get("type") or "").upper() if isinstance(raw, dict) else ""
        if rtype and rtype not in SUPPORTED_RECORD_TYPES:
            label = raw.get("name") or raw.get("host")
            logger.debug(f"Skipping unsupported record type {rtype}: {label}")
            continue
        try:
            records.append(normalize(raw))
        except MalformedResponseError as e:
            logger.warning(f"Skipping malformed record: {e}")
    return records


# =============================================================================
# Matching
# =============================================================================


def same_identity(a: CanonicalRecord, b: CanonicalRecord) -> bool:
    return a.type == b.type and hostnames_equivalent(a.name, b.name)


def _compared_fields_equal(a: CanonicalRecord, b: CanonicalRecord) -> bool:
    return all(a.get(key) == b.get(key) for key in COMPARED_FIELDS.get(a.type, ()))


def equivalent(a: CanonicalRecord, b: CanonicalRecord) -> bool:
    """True when two records describe the same DNS data within the TTL tolerance."""
    return (
        same_identity(a, b)
        and a.content == b.content
        and abs(a.ttl - b.ttl) <= TTL_TOLERANCE_SECONDS
        and _compared_fields_equal(a, b)
    )


def needs_update(source: CanonicalRecord, target: CanonicalRecord) -> bool:
    """True when `target` must be rewritten to match `source`."""
    if source.content != target.content:
        return True
    if abs(source.ttl - target.ttl) > TTL_TOLERANCE_SECONDS:
        return True
    return not _compared_fields_equal(source, target)


def find_match_index(
    record: CanonicalRecord,
    candidates: Sequence[CanonicalRecord],
    claimed: Collection[int] = (),
) -> Optional[int]:
    """Index of the candidate `record` pairs with, or None.

    The first equivalent candidate wins. Without one, the first unclaimed
    candidate with the same type and name is returned so that it can be
    updated in place.
    """
    for index, candidate in enumerate(candidates):
        if index not in claimed and equivalent(record, candidate):
            return index

    identity_matches = [
        index
        for index, candidate in enumerate(candidates)
        if index not in claimed and same_identity(record, candidate)
    ]
    if len(identity_matches) > 1:
        logger.debug(
            f"{record.identity} has {len(identity_matches)} candidate records; "
            f"pairing with the first in listing order"
        )
    return identity_matches[0] if identity_matches else None


def find_match(
    record: CanonicalRecord, candidates: Sequence[CanonicalRecord]
) -> Optional[CanonicalRecord]:
    index = find_match_index(record, candidates)
    return candidates[index] if index is not None else None
