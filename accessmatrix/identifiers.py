from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from accessmatrix.rules import OTHER_KIND, AccessRules, load_rules


UNKNOWN_LOCATION = "unknown"

_VERSION_SEGMENT_RE = re.compile(r"^v\d+((alpha|beta)\d*)?$")
_LOCATION_MARKERS = ("locations", "zones", "regions")


@dataclass(frozen=True, order=True)
class ResourceKey:
    kind: str
    name: str

    @property
    def canonical_id(self) -> str:
        return f"{self.kind}:{self.name}"


def _split(identifier: str) -> tuple[Optional[str], list[str]]:
    """Return (host, path segments). Host is None for bare identifiers."""
    if "://" in identifier:
        rest = identifier.split("://", 1)[1]
    elif identifier.startswith("//"):
        rest = identifier[2:]
    else:
        return None, [s for s in identifier.split("/") if s]
    host, _, path = rest.partition("/")
    return host.lower(), [s for s in path.split("/") if s]


def _classify_parts(identifier: str) -> tuple[Optional[str], Optional[str], Optional[str]]:
    """Return (service, first collection, collection holding the resource name)."""
    host, segments = _split(identifier)
    if not host:
        return None, None, None
    labels = host.split(".")
    # https://www.googleapis.com/compute/v1/... carries the service in the path.
    if labels[0] in ("www", "googleapis"):
        if not segments:
            return None, None, None
        service, segments = segments[0].lower(), segments[1:]
    else:
        service = labels[0]
    rest = [s for s in segments if not _VERSION_SEGMENT_RE.match(s)]
    return service, (rest[0] if rest else None), (segments[-2] if len(segments) >= 2 else None)


def service_of(identifier: str) -> Optional[str]:
    return _classify_parts(identifier)[0]


def classify_kind(identifier: str, rules: Optional[AccessRules] = None) -> str:
    rules = rules or load_rules()
    service, collection, resource_type = _classify_parts(identifier)
    if not service:
        return OTHER_KIND
    for entry in rules.service_kinds:
        if entry.service != service:
            continue
        if entry.collection is not None and entry.collection != collection:
            continue
        if entry.resource_type is not None and entry.resource_type != resource_type:
            continue
        return entry.kind
    return OTHER_KIND


def trailing_name(identifier: str) -> str:
    _, segments = _split(identifier)
    if "/" not in identifier or not segments:
        return identifier
    return segments[-1]


def canonical_key(identifier: str, kind: Optional[str] = None, rules: Optional[AccessRules] = None) -> ResourceKey:
    """
    Reduce any identifier shape to the (kind, name) join key.

    `kind` overrides classification, which is how inventory records whose
    identifier carries no service segment (numeric ids, Cloud Run names) land
    on the same key as the asset name reported by policy search.
    """
    return ResourceKey(kind=kind or classify_kind(identifier, rules), name=trailing_name(identifier))


def same_resource(
    a: str,
    b: str,
    *,
    kind_a: Optional[str] = None,
    kind_b: Optional[str] = None,
    rules: Optional[AccessRules] = None,
) -> bool:
    if a == b:
        return True
    return canonical_key(a, kind_a, rules) == canonical_key(b, kind_b, rules)


def location_from_name(identifier: str, default: str = UNKNOWN_LOCATION) -> str:
    # projects/P/locations/L/services/S, .../zones/Z/instances/I, .../regions/R/...
    _, segments = _split(identifier)
    for i, seg in enumerate(segments[:-1]):
        if seg in _LOCATION_MARKERS:
            return segments[i + 1]
    return default
