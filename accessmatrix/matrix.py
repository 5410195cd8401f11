from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from accessmatrix.identifiers import ResourceKey
from accessmatrix.principals import Principal, parse_member
from accessmatrix.resources import AccessFact, Resource


@dataclass(frozen=True)
class AccessEntry:
    principal: str
    resource: ResourceKey
    roles: tuple[str, ...]

    def to_dict(self) -> dict:
        return {
            "principal": self.principal,
            "resource": self.resource.canonical_id,
            "resourceName": self.resource.name,
            "resourceKind": self.resource.kind,
            "roles": list(self.roles),
        }


@dataclass
class AccessMatrix:
    project_id: str
    principals: list[Principal]
    resources: list[Resource]
    entries: list[AccessEntry]
    errors: list[dict] = field(default_factory=list)

    def entry(self, principal: str, resource: ResourceKey) -> Optional[AccessEntry]:
        for e in self.entries:
            if e.principal == principal and e.resource == resource:
                return e
        return None

    def to_dict(self) -> dict:
        return {
            "projectId": self.project_id,
            "principals": [p.to_dict() for p in self.principals],
            "resources": [r.to_dict() for r in self.resources],
            "accessEntries": [e.to_dict() for e in self.entries],
            "errors": list(self.errors),
        }


def group_roles(facts: Iterable[AccessFact]) -> dict[tuple[str, ResourceKey], set[str]]:
    grouped: dict[tuple[str, ResourceKey], set[str]] = {}
    for f in facts:
        grouped.setdefault((f.principal, f.resource), set()).add(f.role)
    return grouped


def assemble_matrix(
    *,
    project_id: str,
    principals: dict[str, Principal],
    resources: Iterable[Resource],
    facts: Iterable[AccessFact],
    errors: Optional[list[dict]] = None,
) -> AccessMatrix:
    """
    Fold direct and inherited facts into one entry per (principal, resource).

    Output lists are sorted (principal identifier, then canonical id) so two
    runs over the same input compare equal.
    """
    tracked = {r.key: r for r in resources}
    grouped = group_roles(f for f in facts if f.resource in tracked)

    known = dict(principals)
    for principal_id, _ in grouped:
        if principal_id not in known:
            # Every principal referenced by an entry must be listed.
            known[principal_id] = parse_member(principal_id)

    entries = [
        AccessEntry(principal=principal_id, resource=key, roles=tuple(sorted(roles)))
        for (principal_id, key), roles in grouped.items()
        if roles
    ]
    entries.sort(key=lambda e: (e.principal, e.resource.canonical_id))

    return AccessMatrix(
        project_id=project_id,
        principals=sorted(known.values(), key=lambda p: (p.identifier, p.kind)),
        resources=sorted(tracked.values(), key=lambda r: r.canonical_id),
        entries=entries,
        errors=list(errors or []),
    )
