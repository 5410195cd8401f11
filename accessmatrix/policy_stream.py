from __future__ import annotations

import threading
from typing import Iterable, Optional

from accessmatrix.errors import check_cancelled
from accessmatrix.identifiers import UNKNOWN_LOCATION, canonical_key
from accessmatrix.principals import Principal, parse_member
from accessmatrix.resources import DIRECT, SOURCE_POLICY_SEARCH, AccessFact, Resource, ResourceIndex
from accessmatrix.rules import AccessRules


STAGE = "policy_search"


def reduce_policy_stream(
    results: Iterable[dict],
    *,
    index: ResourceIndex,
    principals: dict[str, Principal],
    rules: Optional[AccessRules] = None,
    cancel: Optional[threading.Event] = None,
) -> set[AccessFact]:
    """
    Fold Cloud Asset `searchAllIamPolicies` results into direct access facts.

    `results` is consumed lazily; any exception it raises propagates unchanged
    because a partially read stream would under-report access. Resources that
    the inventory did not know about are added to `index` with the kind taken
    from the asset name and an unknown location. Principals seen only here are
    added to `principals`.
    """
    facts: set[AccessFact] = set()
    for item in results:
        check_cancelled(cancel, STAGE)
        if not isinstance(item, dict):
            continue
        identifier = item.get("resource")
        if not isinstance(identifier, str) or not identifier:
            continue

        resource = index.lookup(identifier)
        if resource is None:
            key = canonical_key(identifier, rules=rules)
            resource = index.add(
                Resource(
                    key=key,
                    resource_id=identifier,
                    name=key.name,
                    location=UNKNOWN_LOCATION,
                    source=SOURCE_POLICY_SEARCH,
                )
            )

        policy = item.get("policy", {}) or {}
        for b in policy.get("bindings", []) or []:
            if not isinstance(b, dict):
                continue
            role = b.get("role")
            if not isinstance(role, str) or not role:
                continue
            for m in b.get("members", []) or []:
                if not isinstance(m, str) or not m:
                    continue
                principal = parse_member(m)
                principals.setdefault(principal.identifier, principal)
                resource.add_grant(role, principal.identifier)
                facts.add(AccessFact(principal=principal.identifier, resource=resource.key, role=role, origin=DIRECT))
    return facts
