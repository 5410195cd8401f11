from __future__ import annotations

from typing import Iterable, Optional

from accessmatrix.identifiers import ResourceKey
from accessmatrix.resources import DIRECT, INHERITED, AccessFact, Resource
from accessmatrix.rules import AccessRules, load_rules


def applicable_kinds(role: str, rules: Optional[AccessRules] = None) -> frozenset[str]:
    """Resource kinds a project-level grant of `role` cascades to (empty: no cascade)."""
    rules = rules or load_rules()
    if role in rules.basic_roles:
        return rules.inheritable_kinds
    for prefix, kinds in rules.role_prefix_kinds:
        if role.startswith(prefix):
            return kinds & rules.inheritable_kinds
    return frozenset()


def project_grants(facts: Iterable[AccessFact], project_keys: frozenset[ResourceKey]) -> set[tuple[str, str]]:
    """(principal, role) pairs granted directly on the project itself."""
    return {(f.principal, f.role) for f in facts if f.origin == DIRECT and f.resource in project_keys}


def resolve_inherited(
    direct_facts: Iterable[AccessFact],
    resources: Iterable[Resource],
    *,
    project_keys: Iterable[ResourceKey],
    rules: Optional[AccessRules] = None,
) -> set[AccessFact]:
    """
    Expand project-scoped grants onto every tracked child resource whose kind
    the role applies to.

    Pure function of its inputs. A fact is never synthesized when the same
    (principal, resource, role) already exists as a direct grant.
    """
    facts = [f for f in direct_facts if f.origin == DIRECT]
    keys = frozenset(project_keys)
    existing = {f.grant for f in facts}
    children = [r for r in resources if r.key not in keys]

    inherited: set[AccessFact] = set()
    for principal, role in sorted(project_grants(facts, keys)):
        kinds = applicable_kinds(role, rules)
        if not kinds:
            continue
        for resource in children:
            if resource.kind not in kinds:
                continue
            if (principal, resource.key, role) in existing:
                continue
            inherited.add(AccessFact(principal=principal, resource=resource.key, role=role, origin=INHERITED))
    return inherited
