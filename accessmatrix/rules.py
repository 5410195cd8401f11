from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

import yaml


OTHER_KIND = "other"
PROJECT_KIND = "project"


def _rules_dir() -> str:
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), "rules")


def _load_yaml(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML mapping in {path}")
    return data


@dataclass(frozen=True)
class ServiceKind:
    service: str
    kind: str
    collection: Optional[str] = None
    resource_type: Optional[str] = None


@dataclass(frozen=True)
class AccessRules:
    resource_kinds: frozenset[str]
    service_kinds: tuple[ServiceKind, ...]
    basic_roles: frozenset[str]
    inheritable_kinds: frozenset[str]
    role_prefix_kinds: tuple[tuple[str, frozenset[str]], ...]
    default_zones: tuple[str, ...]


def _check_kind(kind: object, known: frozenset[str], path: str) -> str:
    if not isinstance(kind, str) or kind not in known:
        raise ValueError(f"Unknown resource kind {kind!r} in {path}")
    return kind


def parse_rules(data: dict, *, path: str = "<rules>") -> AccessRules:
    kinds = frozenset(str(k) for k in (data.get("resource_kinds") or []))
    if OTHER_KIND not in kinds or PROJECT_KIND not in kinds:
        raise ValueError(f"{path}: resource_kinds must include `{OTHER_KIND}` and `{PROJECT_KIND}`")

    service_kinds: list[ServiceKind] = []
    for entry in data.get("service_kinds") or []:
        if not isinstance(entry, dict) or not entry.get("service"):
            raise ValueError(f"{path}: every service_kinds entry needs a `service`")
        service_kinds.append(
            ServiceKind(
                service=str(entry["service"]).lower(),
                kind=_check_kind(entry.get("kind"), kinds, path),
                collection=entry.get("collection"),
                resource_type=entry.get("type"),
            )
        )

    excluded = {_check_kind(k, kinds, path) for k in (data.get("non_inheritable_kinds") or [])}

    prefix_kinds: list[tuple[str, frozenset[str]]] = []
    for prefix, targets in (data.get("role_prefix_kinds") or {}).items():
        if not isinstance(targets, list):
            raise ValueError(f"{path}: role_prefix_kinds[{prefix}] must be a list")
        prefix_kinds.append((str(prefix), frozenset(_check_kind(k, kinds, path) for k in targets)))

    return AccessRules(
        resource_kinds=kinds,
        service_kinds=tuple(service_kinds),
        basic_roles=frozenset(str(r) for r in (data.get("basic_roles") or [])),
        inheritable_kinds=frozenset(kinds - excluded),
        role_prefix_kinds=tuple(prefix_kinds),
        default_zones=tuple(str(z) for z in (data.get("default_zones") or [])),
    )


_GCP_RULES: Optional[AccessRules] = None


def load_rules() -> AccessRules:
    global _GCP_RULES
    if _GCP_RULES is None:
        path = os.path.join(_rules_dir(), "gcp.yaml")
        _GCP_RULES = parse_rules(_load_yaml(path), path=path)
    return _GCP_RULES
