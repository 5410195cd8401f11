from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Optional

from accessmatrix.identifiers import UNKNOWN_LOCATION, ResourceKey, canonical_key
from accessmatrix.rules import AccessRules


SOURCE_INVENTORY = "inventory"
SOURCE_POLICY_SEARCH = "policy_search"

DIRECT = "direct"
INHERITED = "inherited"


@dataclass(frozen=True, order=True)
class AccessFact:
    principal: str
    resource: ResourceKey
    role: str
    origin: str = DIRECT

    @property
    def grant(self) -> tuple[str, ResourceKey, str]:
        return (self.principal, self.resource, self.role)


@dataclass
class Resource:
    key: ResourceKey
    resource_id: str
    name: str
    location: str = UNKNOWN_LOCATION
    source: str = SOURCE_INVENTORY
    direct_grants: dict[str, set[str]] = field(default_factory=dict)
    aliases: set[str] = field(default_factory=set)

    @property
    def kind(self) -> str:
        return self.key.kind

    @property
    def canonical_id(self) -> str:
        return self.key.canonical_id

    def add_grant(self, role: str, principal_id: str) -> None:
        self.direct_grants.setdefault(role, set()).add(principal_id)

    def to_dict(self) -> dict:
        return {
            "canonicalId": self.canonical_id,
            "resourceId": self.resource_id,
            "displayName": self.name,
            "kind": self.kind,
            "location": self.location,
            "directGrants": {role: sorted(members) for role, members in sorted(self.direct_grants.items())},
        }


class ResourceIndex:
    """
    Owned collection of resources for one aggregation pass.

    One Resource per ResourceKey. Lookups try the raw identifier first and fall
    back to (kind, name) equality; there is no partial-string matching.
    """

    def __init__(self, rules: Optional[AccessRules] = None) -> None:
        self._rules = rules
        self._by_key: dict[ResourceKey, Resource] = {}
        self._by_raw: dict[str, ResourceKey] = {}

    def __len__(self) -> int:
        return len(self._by_key)

    def __iter__(self) -> Iterator[Resource]:
        return iter(list(self._by_key.values()))

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def get(self, key: ResourceKey) -> Optional[Resource]:
        return self._by_key.get(key)

    def lookup(self, identifier: str, kind: Optional[str] = None) -> Optional[Resource]:
        key = self._by_raw.get(identifier)
        if key is None:
            key = canonical_key(identifier, kind, self._rules)
        return self._by_key.get(key)

    def add(self, resource: Resource) -> Resource:
        """Insert or merge; returns the instance held by the index."""
        existing = self._by_key.get(resource.key)
        if existing is None:
            self._by_key[resource.key] = resource
            stored = resource
        else:
            stored = existing
            if resource.source == SOURCE_INVENTORY and existing.source != SOURCE_INVENTORY:
                stored.name = resource.name
                stored.location = resource.location
                stored.resource_id = resource.resource_id
                stored.source = SOURCE_INVENTORY
            for role, members in resource.direct_grants.items():
                stored.direct_grants.setdefault(role, set()).update(members)
            stored.aliases.update(resource.aliases)
        for raw in {resource.resource_id, *resource.aliases}:
            if raw:
                self._by_raw.setdefault(raw, stored.key)
        return stored
