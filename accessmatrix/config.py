from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from accessmatrix.identifiers import ResourceKey
from accessmatrix.rules import PROJECT_KIND, load_rules


DEFAULT_PAGE_SIZE = 500
DEFAULT_MAX_WORKERS = 8


def _split_csv(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(dict.fromkeys(v.strip() for v in value.split(",") if v.strip()))


@dataclass(frozen=True)
class AggregationConfig:
    project_id: str
    project_number: Optional[str] = None
    quota_project: Optional[str] = None
    zones: tuple[str, ...] = field(default_factory=lambda: load_rules().default_zones)
    discover_zones: bool = False
    page_size: int = DEFAULT_PAGE_SIZE
    max_workers: int = DEFAULT_MAX_WORKERS

    def __post_init__(self) -> None:
        if not self.project_id or not self.project_id.strip():
            raise ValueError("project_id is required")
        if self.page_size <= 0:
            raise ValueError("page_size must be positive")
        if self.max_workers <= 0:
            raise ValueError("max_workers must be positive")

    @property
    def scope(self) -> str:
        return f"projects/{self.project_id}"

    @property
    def project_keys(self) -> frozenset[ResourceKey]:
        """Keys under which policy search may report the project itself (id or number)."""
        keys = {ResourceKey(PROJECT_KIND, self.project_id)}
        if self.project_number:
            keys.add(ResourceKey(PROJECT_KIND, self.project_number))
        return frozenset(keys)


def config_from_env(env: Optional[Mapping[str, str]] = None, **overrides) -> AggregationConfig:
    """
    Build a config from GCP_PROJECT_ID, GCP_PROJECT_NUMBER, GCP_QUOTA_PROJECT,
    GCP_ZONES and ACCESS_MATRIX_MAX_WORKERS. Keyword overrides win when not None.
    """
    env = os.environ if env is None else env
    values: dict = {
        "project_id": env.get("GCP_PROJECT_ID", "").strip(),
        "project_number": env.get("GCP_PROJECT_NUMBER") or None,
        "quota_project": env.get("GCP_QUOTA_PROJECT") or None,
    }
    zones = _split_csv(env.get("GCP_ZONES"))
    if zones:
        values["zones"] = zones
    workers = env.get("ACCESS_MATRIX_MAX_WORKERS")
    if workers:
        try:
            values["max_workers"] = int(workers)
        except ValueError as exc:
            raise ValueError(f"ACCESS_MATRIX_MAX_WORKERS must be an integer, got {workers!r}") from exc
    values.update({k: v for k, v in overrides.items() if v is not None})
    if not values["project_id"]:
        raise ValueError("GCP_PROJECT_ID environment variable is required")
    return AggregationConfig(**values)
