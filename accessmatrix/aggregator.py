from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from accessmatrix.config import AggregationConfig
from accessmatrix.errors import AggregationError, check_cancelled
from accessmatrix.inheritance import resolve_inherited
from accessmatrix.inventory import InventoryBackend, collect_inventory
from accessmatrix.matrix import AccessMatrix, assemble_matrix
from accessmatrix.policy_stream import reduce_policy_stream
from accessmatrix.principals import principals_from_policy
from accessmatrix.rules import AccessRules, load_rules


STAGES = ("principals", "inventory", "policy_search", "inheritance", "assemble")


@dataclass(frozen=True)
class AccessSources:
    """Collaborators for one project: all network access happens behind these callables."""

    get_project_policy: Callable[[], dict]
    search_policies: Callable[[], Iterable[dict]]
    inventory_backends: tuple[InventoryBackend, ...] = ()


def compute_access_matrix(
    sources: AccessSources,
    *,
    config: AggregationConfig,
    rules: Optional[AccessRules] = None,
    cancel: Optional[threading.Event] = None,
    progress_cb: Optional[Callable[[str], None]] = None,
) -> AccessMatrix:
    """
    Run one aggregation pass for `config.project_id`.

    Stages run in order because inheritance needs the complete resource set and
    the complete direct-grant set. Inventory problems are returned in
    `AccessMatrix.errors`; principal directory and policy search failures raise
    AggregationError naming the stage.
    """
    rules = rules or load_rules()
    errors: list[dict] = []

    def enter(stage: str) -> None:
        check_cancelled(cancel, stage)
        if progress_cb:
            progress_cb(stage)

    enter("principals")
    try:
        policy = sources.get_project_policy() or {}
    except AggregationError:
        raise
    except Exception as exc:
        raise AggregationError("principals", f"failed to get project IAM policy: {exc}") from exc
    principals = principals_from_policy(policy)

    enter("inventory")
    index = collect_inventory(
        sources.inventory_backends,
        errors=errors,
        rules=rules,
        max_workers=config.max_workers,
        cancel=cancel,
    )

    enter("policy_search")
    try:
        direct = reduce_policy_stream(
            sources.search_policies(),
            index=index,
            principals=principals,
            rules=rules,
            cancel=cancel,
        )
    except AggregationError:
        raise
    except Exception as exc:
        raise AggregationError("policy_search", f"failed to iterate policies: {exc}") from exc

    enter("inheritance")
    inherited = resolve_inherited(direct, index, project_keys=config.project_keys, rules=rules)

    enter("assemble")
    return assemble_matrix(
        project_id=config.project_id,
        principals=principals,
        resources=index,
        facts=direct | inherited,
        errors=errors,
    )
