from __future__ import annotations

import concurrent.futures
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional

from accessmatrix.errors import check_cancelled
from accessmatrix.identifiers import UNKNOWN_LOCATION, canonical_key, location_from_name, trailing_name
from accessmatrix.principals import parse_member
from accessmatrix.resources import SOURCE_INVENTORY, Resource, ResourceIndex
from accessmatrix.rules import AccessRules


STAGE = "inventory"


@dataclass(frozen=True)
class InventoryBackend:
    name: str
    kind: str
    list_records: Callable[[list[dict]], Iterable[dict]]
    to_resource: Callable[[dict, str], Optional[Resource]]
    get_iam_policy: Optional[Callable[[dict], dict]] = None


def _make_resource(*, kind: str, resource_id: str, name: str, location: str, aliases: Iterable[object]) -> Resource:
    return Resource(
        key=canonical_key(name, kind),
        resource_id=resource_id,
        name=trailing_name(name),
        location=location or UNKNOWN_LOCATION,
        source=SOURCE_INVENTORY,
        aliases={str(a) for a in aliases if isinstance(a, (str, int)) and str(a)},
    )


def cluster_to_resource(record: dict, kind: str = "cluster") -> Optional[Resource]:
    name = record.get("name")
    if not isinstance(name, str) or not name:
        return None
    self_link = record.get("selfLink") or ""
    location = record.get("location") or location_from_name(self_link)
    return _make_resource(
        kind=kind,
        resource_id=self_link or name,
        name=name,
        location=location,
        aliases=(self_link, record.get("id")),
    )


def instance_to_resource(record: dict, kind: str = "vm") -> Optional[Resource]:
    name = record.get("name")
    if not isinstance(name, str) or not name:
        return None
    # `zone` is a URL in the Compute API (.../zones/us-central1-a).
    zone = record.get("zone") or ""
    instance_id = record.get("id")
    return _make_resource(
        kind=kind,
        resource_id=str(instance_id) if instance_id is not None else name,
        name=name,
        location=trailing_name(zone) if zone else UNKNOWN_LOCATION,
        aliases=(record.get("selfLink"),),
    )


def run_service_to_resource(record: dict, kind: str = "managed_service") -> Optional[Resource]:
    # Cloud Run v2: projects/PROJECT/locations/LOCATION/services/SERVICE
    name = record.get("name")
    if not isinstance(name, str) or not name:
        return None
    return _make_resource(
        kind=kind,
        resource_id=name,
        name=name,
        location=location_from_name(name),
        aliases=(record.get("uid"),),
    )


def iter_zone_records(
    list_zone: Callable[[str], Iterable[dict]],
    zones: Iterable[str],
    *,
    errors: list[dict],
    backend: str = "compute",
) -> Iterator[dict]:
    """
    Yield instance records zone by zone.

    A failing zone stops only its own pagination: records already received
    from it are kept and the next zone is tried.
    """
    for zone in zones:
        try:
            for rec in list_zone(zone):
                if isinstance(rec, dict):
                    yield {**rec, "zone": rec.get("zone") or zone}
        except Exception as exc:
            errors.append({"kind": "inventory_zone", "backend": backend, "zone": zone, "error": str(exc)})


def collect_inventory(
    backends: Iterable[InventoryBackend],
    *,
    errors: list[dict],
    rules: Optional[AccessRules] = None,
    max_workers: int = 8,
    cancel: Optional[threading.Event] = None,
) -> ResourceIndex:
    index = ResourceIndex(rules)
    pending: list[tuple[InventoryBackend, dict, Resource]] = []

    for backend in backends:
        check_cancelled(cancel, STAGE)
        try:
            for rec in backend.list_records(errors):
                if not isinstance(rec, dict):
                    continue
                resource = backend.to_resource(rec, backend.kind)
                if resource is None:
                    continue
                stored = index.add(resource)
                if backend.get_iam_policy is not None:
                    pending.append((backend, rec, stored))
        except Exception as exc:
            errors.append({"kind": "inventory", "backend": backend.name, "error": str(exc)})

    if not pending:
        return index

    # Policy lookups run in parallel; results are applied on this thread only.
    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        future_map = {
            executor.submit(backend.get_iam_policy, rec): (backend, resource)
            for backend, rec, resource in pending
        }
        for fut in concurrent.futures.as_completed(future_map):
            if cancel is not None and cancel.is_set():
                for other in future_map:
                    other.cancel()
                check_cancelled(cancel, STAGE)
            backend, resource = future_map[fut]
            try:
                policy = fut.result() or {}
            except Exception as exc:
                errors.append(
                    {
                        "kind": "iam_enrichment",
                        "backend": backend.name,
                        "resource": resource.canonical_id,
                        "error": str(exc),
                    }
                )
                continue
            if not isinstance(policy, dict):
                continue
            for b in policy.get("bindings", []) or []:
                if not isinstance(b, dict):
                    continue
                role = b.get("role")
                if not isinstance(role, str) or not role:
                    continue
                for m in b.get("members", []) or []:
                    if isinstance(m, str) and m:
                        resource.add_grant(role, parse_member(m).identifier)
    return index
