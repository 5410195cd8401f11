from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Optional

from accessmatrix.matrix import AccessMatrix


SCHEMA_VERSION = 1
TOOL_NAME = "GCP Access Matrix"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def atomic_write_json(path: str, obj: Any) -> None:
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=False, default=str)
        f.write("\n")
    os.replace(tmp_path, path)


def matrix_target(matrix: AccessMatrix) -> dict:
    return {
        "target_type": "project",
        "target_id": f"projects/{matrix.project_id}",
        "label": matrix.project_id,
        "data": matrix.to_dict(),
    }


def build_report(
    *,
    matrices: list[AccessMatrix],
    failures: Optional[list[dict]] = None,
) -> dict:
    """
    Wrap per-project matrices in the report envelope.

    `failures` lists projects whose aggregation aborted (fatal stage errors);
    recoverable problems stay inside each target's `errors`.
    """
    failures = failures or []
    warnings = sum(len(m.errors) for m in matrices)
    summary = {
        "total_targets": len(matrices),
        "failed_targets": len(failures),
        "principals": sum(len(m.principals) for m in matrices),
        "resources": sum(len(m.resources) for m in matrices),
        "access_entries": sum(len(m.entries) for m in matrices),
        "warnings": warnings,
    }
    report = {
        "tool": TOOL_NAME,
        "schema_version": SCHEMA_VERSION,
        "provider": "gcp",
        "generated_at": utc_now_iso(),
        "targets": [matrix_target(m) for m in matrices],
        "summary": summary,
    }
    if failures:
        report["errors"] = failures
    return report
