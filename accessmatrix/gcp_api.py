from __future__ import annotations

import json
import os
import shlex
import subprocess
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Iterator, Optional

import google.auth
import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.service_account

from accessmatrix.aggregator import AccessSources
from accessmatrix.config import AggregationConfig
from accessmatrix.errors import ApiError
from accessmatrix.inventory import (
    InventoryBackend,
    cluster_to_resource,
    instance_to_resource,
    iter_zone_records,
    run_service_to_resource,
)


CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


def run_text(cmd: list[str]) -> str:
    try:
        out = subprocess.check_output(cmd, text=True)
    except subprocess.CalledProcessError as exc:
        raise RuntimeError(f"Command failed: {shlex.join(cmd)}\n{exc.output}") from exc
    return out.strip()


def _get_access_token_from_gcloud() -> Optional[str]:
    try:
        token = run_text(["gcloud", "auth", "print-access-token"])
    except (RuntimeError, OSError):
        return None
    return token or None


def _get_access_token_from_google_auth_default() -> Optional[str]:
    try:
        creds, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
        creds.refresh(google.auth.transport.requests.Request())
    except google.auth.exceptions.GoogleAuthError:
        return None
    return getattr(creds, "token", None)


def _get_access_token_from_service_account_json(sa_json: str) -> str:
    try:
        if os.path.exists(sa_json):
            with open(sa_json, "r", encoding="utf-8") as f:
                info = json.load(f)
        else:
            info = json.loads(sa_json)
    except (OSError, ValueError) as exc:
        raise RuntimeError("Invalid --sa-json (must be a path to a JSON key file or a raw JSON string).") from exc

    creds = google.oauth2.service_account.Credentials.from_service_account_info(info, scopes=[CLOUD_PLATFORM_SCOPE])
    creds.refresh(google.auth.transport.requests.Request())
    token = getattr(creds, "token", None)
    if not token:
        raise RuntimeError("Unable to obtain access token from service account credentials.")
    return token


def get_access_token_auto(*, sa_json: Optional[str]) -> str:
    if sa_json:
        return _get_access_token_from_service_account_json(sa_json)

    token = _get_access_token_from_gcloud()
    if token:
        return token

    token = _get_access_token_from_google_auth_default()
    if token:
        return token

    raise RuntimeError(
        "Unable to obtain credentials. Provide `--sa-json` (service account key), or login with `gcloud auth login`, "
        "or run in an environment with metadata/ADC available."
    )


def get_default_project_from_gcloud() -> Optional[str]:
    try:
        value = run_text(["gcloud", "config", "get-value", "project"])
    except (RuntimeError, OSError):
        return None
    return value if value and value.lower() != "(unset)" else None


def http_json(
    url: str,
    *,
    token: str,
    quota_project: Optional[str] = None,
    method: str = "GET",
    body: Optional[dict] = None,
    timeout: int = 60,
    retries: int = 4,
) -> dict:
    headers = {"Authorization": f"Bearer {token}"}
    if quota_project:
        headers["X-Goog-User-Project"] = quota_project

    data = None
    if body is not None:
        data = json.dumps(body).encode("utf-8")
        headers["Content-Type"] = "application/json"

    for attempt in range(retries + 1):
        req = urllib.request.Request(url, headers=headers, method=method, data=data)
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                raw = resp.read()
            if not raw:
                return {}
            return json.loads(raw.decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
            try:
                err_json = json.loads(raw) if raw else {}
            except ValueError:
                err_json = {"raw": raw}

            error = err_json.get("error", {}) if isinstance(err_json.get("error"), dict) else {}
            status = error.get("status")
            message = error.get("message") or raw or str(exc)
            reason = None
            for detail in error.get("details", []) or []:
                if isinstance(detail, dict) and detail.get("@type", "").endswith("ErrorInfo"):
                    reason = detail.get("reason")
                    break

            # Backoff on transient errors.
            if exc.code in (429, 500, 502, 503, 504) and attempt < retries:
                time.sleep(min(8, 0.5 * (2**attempt)))
                continue

            raise ApiError(f"{exc.code} {status or ''} {reason or ''}: {message}".strip()) from exc
        except (urllib.error.URLError, ConnectionResetError, TimeoutError) as exc:
            if attempt < retries:
                time.sleep(min(8, 0.5 * (2**attempt)))
                continue
            raise ApiError(f"Network error: {exc}") from exc
    raise ApiError(f"No response from {url}")


def _iter_pages(
    base: str,
    *,
    items_key: str,
    token: str,
    quota_project: Optional[str],
    params: Optional[dict] = None,
) -> Iterator[dict]:
    page_token: Optional[str] = None
    while True:
        query = dict(params or {})
        if page_token:
            query["pageToken"] = page_token
        url = f"{base}?{urllib.parse.urlencode(query)}" if query else base
        data = http_json(url, token=token, quota_project=quota_project)
        for item in data.get(items_key, []) or []:
            if isinstance(item, dict):
                yield item
        page_token = data.get("nextPageToken")
        if not page_token:
            break


def get_project_iam_policy(*, project_id: str, token: str, quota_project: Optional[str]) -> dict:
    url = f"https://cloudresourcemanager.googleapis.com/v1/projects/{project_id}:getIamPolicy"
    return http_json(url, token=token, quota_project=quota_project, method="POST", body={})


def list_gke_clusters(*, project_id: str, token: str, quota_project: Optional[str]) -> list[dict]:
    # ListClusters is not paginated.
    url = f"https://container.googleapis.com/v1/projects/{project_id}/locations/-/clusters"
    data = http_json(url, token=token, quota_project=quota_project)
    return [c for c in data.get("clusters", []) or [] if isinstance(c, dict)]


def list_compute_zones(*, project_id: str, token: str, quota_project: Optional[str]) -> list[str]:
    base = f"https://compute.googleapis.com/compute/v1/projects/{project_id}/zones"
    zones = []
    for z in _iter_pages(base, items_key="items", token=token, quota_project=quota_project):
        name = z.get("name")
        if isinstance(name, str) and name and z.get("status", "UP") == "UP":
            zones.append(name)
    return sorted(set(zones))


def iter_zone_instances(
    *, project_id: str, zone: str, token: str, quota_project: Optional[str], page_size: int
) -> Iterator[dict]:
    base = f"https://compute.googleapis.com/compute/v1/projects/{project_id}/zones/{zone}/instances"
    return _iter_pages(
        base,
        items_key="items",
        token=token,
        quota_project=quota_project,
        params={"maxResults": str(min(page_size, 500))},
    )


def get_instance_iam_policy(*, project_id: str, instance: dict, token: str, quota_project: Optional[str]) -> dict:
    zone = str(instance.get("zone") or "").rsplit("/", 1)[-1]
    name = urllib.parse.quote(str(instance.get("name") or ""), safe="")
    url = f"https://compute.googleapis.com/compute/v1/projects/{project_id}/zones/{zone}/instances/{name}/getIamPolicy"
    return http_json(url, token=token, quota_project=quota_project)


def list_run_services(*, project_id: str, token: str, quota_project: Optional[str], page_size: int) -> Iterator[dict]:
    base = f"https://run.googleapis.com/v2/projects/{project_id}/locations/-/services"
    return _iter_pages(
        base,
        items_key="services",
        token=token,
        quota_project=quota_project,
        params={"pageSize": str(page_size)},
    )


def get_run_service_iam_policy(*, service: dict, token: str, quota_project: Optional[str]) -> dict:
    url = f"https://run.googleapis.com/v2/{service.get('name')}:getIamPolicy"
    return http_json(url, token=token, quota_project=quota_project)


def iter_search_all_iam_policies(
    *,
    scope: str,
    token: str,
    quota_project: Optional[str],
    page_size: int,
    query: Optional[str] = None,
) -> Iterator[dict]:
    """
    Lazily yield Cloud Asset `searchAllIamPolicies` results for `scope`.

    One call covers every asset type in the scope. Errors surface while
    iterating; the stream cannot be resumed, callers restart it.
    """
    page_token: Optional[str] = None
    while True:
        params = {"pageSize": str(min(page_size, 500))}
        if query:
            params["query"] = query
        if page_token:
            params["pageToken"] = page_token
        url = f"https://cloudasset.googleapis.com/v1/{scope}:searchAllIamPolicies?{urllib.parse.urlencode(params)}"
        try:
            data = http_json(url, token=token, quota_project=quota_project)
        except ApiError as exc:
            message = str(exc).lower()
            if quota_project is not None and "service_disabled" in message:
                raise ApiError(
                    f"Cloud Asset API appears disabled for quota project `{quota_project}`. "
                    f"Enable `cloudasset.googleapis.com` in that quota project (or change --quota-project)."
                ) from exc
            # User credentials often need a quota project; retry with the analyzed project.
            elif quota_project is None and "requires a quota project" in message:
                quota_guess = scope.split("/", 1)[1] if scope.startswith("projects/") else None
                data = http_json(url, token=token, quota_project=quota_guess)
            else:
                raise
        for item in data.get("results", []) or []:
            yield item
        page_token = data.get("nextPageToken")
        if not page_token:
            break


def build_sources(config: AggregationConfig, *, token: str) -> AccessSources:
    """Wire the REST calls for one project into the aggregation collaborators."""
    project_id = config.project_id
    # None lets Cloud Asset retry with the analyzed project when a quota project is required.
    quota_project = config.quota_project

    def list_vm_records(errors: list[dict]) -> Iterator[dict]:
        zones = config.zones
        if config.discover_zones:
            try:
                zones = tuple(list_compute_zones(project_id=project_id, token=token, quota_project=quota_project))
            except ApiError as exc:
                errors.append({"kind": "inventory_zone", "backend": "compute", "zone": "*", "error": str(exc)})
        return iter_zone_records(
            lambda zone: iter_zone_instances(
                project_id=project_id,
                zone=zone,
                token=token,
                quota_project=quota_project,
                page_size=config.page_size,
            ),
            zones,
            errors=errors,
        )

    backends = (
        InventoryBackend(
            name="gke",
            kind="cluster",
            list_records=lambda errors: list_gke_clusters(
                project_id=project_id, token=token, quota_project=quota_project
            ),
            to_resource=cluster_to_resource,
        ),
        InventoryBackend(
            name="compute",
            kind="vm",
            list_records=list_vm_records,
            to_resource=instance_to_resource,
            get_iam_policy=lambda rec: get_instance_iam_policy(
                project_id=project_id, instance=rec, token=token, quota_project=quota_project
            ),
        ),
        InventoryBackend(
            name="cloudrun",
            kind="managed_service",
            list_records=lambda errors: list_run_services(
                project_id=project_id, token=token, quota_project=quota_project, page_size=config.page_size
            ),
            to_resource=run_service_to_resource,
            get_iam_policy=lambda rec: get_run_service_iam_policy(
                service=rec, token=token, quota_project=quota_project
            ),
        ),
    )

    return AccessSources(
        get_project_policy=lambda: get_project_iam_policy(
            project_id=project_id, token=token, quota_project=quota_project
        ),
        search_policies=lambda: iter_search_all_iam_policies(
            scope=config.scope, token=token, quota_project=quota_project, page_size=config.page_size
        ),
        inventory_backends=backends,
    )
