#!/usr/bin/env python3

import argparse
import concurrent.futures
import os
import sys
import threading
from typing import Optional

from termcolor import colored

from accessmatrix.aggregator import STAGES, compute_access_matrix
from accessmatrix.config import DEFAULT_MAX_WORKERS, DEFAULT_PAGE_SIZE, config_from_env
from accessmatrix.errors import AggregationCancelled, AggregationError
from accessmatrix.gcp_api import build_sources, get_access_token_auto, get_default_project_from_gcloud
from accessmatrix.matrix import AccessMatrix
from accessmatrix.progress import ProjectStageProgress
from accessmatrix.report import atomic_write_json, build_report


def _ok(msg: str) -> str:
    return f"{colored('[+] ', 'green')}{msg}"


def _info(msg: str) -> str:
    return f"{colored('[*] ', 'yellow')}{msg}"


def _warn(msg: str) -> str:
    return f"{colored('[!] ', 'yellow')}{msg}"


def _err(msg: str) -> str:
    return f"{colored('[-] ', 'red')}{msg}"


def _split_values(items: Optional[list[str]]) -> list[str]:
    out: list[str] = []
    for item in items or []:
        out.extend([v.strip() for v in item.split(",") if v.strip()])
    return list(dict.fromkeys(out))  # stable de-dup


def _describe_error(err: dict) -> str:
    kind = err.get("kind") or "error"
    where = err.get("resource") or err.get("zone") or ""
    backend = err.get("backend")
    prefix = f"{kind} ({backend}{' ' + where if where else ''})" if backend else kind
    return f"{prefix}: {err.get('error')}"


def print_human(matrices: list[AccessMatrix], *, max_items: int) -> None:
    for m in matrices:
        print(f"\nAccess matrix for {colored(m.project_id, 'yellow')}:")
        print(
            f"{colored('Principals', 'cyan')}: {len(m.principals)}  "
            f"{colored('Resources', 'cyan')}: {len(m.resources)}  "
            f"{colored('Access entries', 'cyan')}: {len(m.entries)}"
        )
        if m.errors:
            print(f"{colored('Warnings', 'red', attrs=['bold'])}: {len(m.errors)} (use --out-json for details)")

        by_kind: dict[str, int] = {}
        for r in m.resources:
            by_kind[r.kind] = by_kind.get(r.kind, 0) + 1
        if by_kind:
            print("  " + ", ".join(f"{k}={by_kind[k]}" for k in sorted(by_kind)))

        for e in m.entries[:max_items]:
            print(f"  - {e.principal} -> {e.resource.canonical_id}: {', '.join(e.roles)}")
        if len(m.entries) > max_items:
            print(f"  ... and {len(m.entries) - max_items} more")


def main() -> int:
    ap = argparse.ArgumentParser(
        description="Build a principal x resource access matrix for GCP projects (IAM policies + resource inventory)."
    )
    ap.add_argument("--project", action="append", help="Project ID to analyze (repeatable, comma separated).")
    ap.add_argument(
        "--sa-json",
        help="Service Account JSON credentials (path to key file or raw JSON string). If omitted, uses gcloud creds or ADC/metadata.",
    )
    ap.add_argument(
        "--quota-project",
        help="Project ID used for API quota/billing (X-Goog-User-Project). If omitted, no quota header is sent and Cloud Asset calls fall back to the analyzed project when one is required.",
    )
    ap.add_argument(
        "--project-number",
        help="Numeric project number, so policies reported against it are treated as project-level (single project only).",
    )
    ap.add_argument("--zone", action="append", help="Compute zone to list VMs in (repeatable). Defaults to a fixed set.")
    ap.add_argument("--discover-zones", action="store_true", help="List the project's UP zones instead of the fixed set.")
    ap.add_argument("--page-size", type=int, default=DEFAULT_PAGE_SIZE, help=f"Page size for API list calls (default: {DEFAULT_PAGE_SIZE}).")
    ap.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help=f"Parallel per-resource IAM lookups per project (default: {DEFAULT_MAX_WORKERS}).",
    )
    ap.add_argument("--max-parallel-projects", type=int, default=4, help="Max projects to analyze in parallel (default: 4).")
    ap.add_argument("--max-items", type=int, default=20, help="Max access entries to print per project (default: 20).")
    ap.add_argument("--out-json", help="Write full JSON results to this path (stdout stays human-readable).")
    args = ap.parse_args()

    projects = _split_values(args.project)
    if not projects:
        default_project = os.environ.get("GCP_PROJECT_ID") or get_default_project_from_gcloud()
        if default_project:
            projects = [default_project]
    if not projects:
        print(_err("No project selected. Use --project (or set GCP_PROJECT_ID / `gcloud config set project ...`)."), file=sys.stderr)
        return 2
    if args.project_number and len(projects) > 1:
        print(_err("--project-number can only be used with a single project."), file=sys.stderr)
        return 2

    zones = tuple(_split_values(args.zone)) or None
    env = dict(os.environ)
    if len(projects) > 1:
        # A project number only identifies one project.
        env.pop("GCP_PROJECT_NUMBER", None)
    try:
        configs = [
            config_from_env(
                env,
                project_id=pid,
                project_number=args.project_number,
                quota_project=args.quota_project,
                zones=zones,
                discover_zones=args.discover_zones,
                page_size=args.page_size,
                max_workers=args.max_workers,
            )
            for pid in projects
        ]
    except ValueError as exc:
        print(_err(f"Invalid configuration: {exc}"), file=sys.stderr)
        return 2

    try:
        token = get_access_token_auto(sa_json=args.sa_json)
    except Exception as exc:
        print(_err(f"Authentication error: {exc}"), file=sys.stderr)
        return 2

    print(_info(f"Aggregating access for {len(projects)} project(s): {', '.join(projects)}"), file=sys.stderr)
    cancel = threading.Event()
    progress = ProjectStageProgress(projects=projects, stages=STAGES, enabled=len(projects) > 1)

    def analyze(config) -> AccessMatrix:
        try:
            return compute_access_matrix(
                build_sources(config, token=token),
                config=config,
                cancel=cancel,
                progress_cb=progress.callback(config.project_id),
            )
        finally:
            progress.finish(config.project_id)

    matrices: dict[str, AccessMatrix] = {}
    failures: list[dict] = []
    workers = max(1, min(args.max_parallel_projects, len(configs)))
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=workers)
    try:
        future_map = {executor.submit(analyze, c): c.project_id for c in configs}
        for fut in concurrent.futures.as_completed(future_map):
            pid = future_map[fut]
            try:
                matrices[pid] = fut.result()
            except AggregationCancelled:
                continue
            except AggregationError as exc:
                failures.append({"kind": "aggregation", "project": pid, "stage": exc.stage, "error": str(exc)})
            except Exception as exc:
                failures.append({"kind": "worker", "project": pid, "error": str(exc)})
    except KeyboardInterrupt:
        cancel.set()
        print(_err("Interrupted, cancelling running aggregations..."), file=sys.stderr)
        executor.shutdown(wait=True, cancel_futures=True)
        progress.close()
        return 130
    executor.shutdown(wait=True)
    progress.close()

    ordered = [matrices[p] for p in projects if p in matrices]
    for m in ordered:
        for err in m.errors:
            print(_warn(f"{m.project_id}: {_describe_error(err)}"), file=sys.stderr)
    for f in failures:
        print(_err(f"{f['project']}: aggregation failed at stage `{f.get('stage') or 'unknown'}`: {f['error']}"), file=sys.stderr)

    if args.out_json:
        atomic_write_json(args.out_json, build_report(matrices=ordered, failures=failures))
        print(_ok(f"Wrote {args.out_json}"), file=sys.stderr)

    print_human(ordered, max_items=args.max_items)
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
