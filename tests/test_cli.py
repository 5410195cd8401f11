import json
import sys

import pytest

import gcp_access_matrix
from accessmatrix.aggregator import AccessSources
from accessmatrix.errors import ApiError


def _policy(role, member):
    return {"bindings": [{"role": role, "members": [member]}]}


def _fake_build_sources(config, *, token):
    assert token == "tok"
    if config.project_id == "crash":
        raise RuntimeError("unexpected payload")
    if config.project_id == "broken":
        def fail():
            raise ApiError("403 PERMISSION_DENIED")

        return AccessSources(get_project_policy=fail, search_policies=lambda: iter([]))
    stream = [
        {
            "resource": f"//cloudresourcemanager.googleapis.com/projects/{config.project_id}",
            "policy": _policy("roles/viewer", "user:alice@example.com"),
        }
    ]
    return AccessSources(
        get_project_policy=lambda: _policy("roles/viewer", "user:alice@example.com"),
        search_policies=lambda: iter(stream),
    )


@pytest.fixture
def cli(monkeypatch):
    for name in ("GCP_PROJECT_ID", "GCP_PROJECT_NUMBER", "GCP_ZONES", "ACCESS_MATRIX_MAX_WORKERS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(gcp_access_matrix, "get_access_token_auto", lambda sa_json: "tok")
    monkeypatch.setattr(gcp_access_matrix, "get_default_project_from_gcloud", lambda: None)
    monkeypatch.setattr(gcp_access_matrix, "build_sources", _fake_build_sources)

    def run(*argv):
        monkeypatch.setattr(sys, "argv", ["gcp_access_matrix.py", *argv])
        return gcp_access_matrix.main()

    return run


def test_writes_report(cli, tmp_path, capsys):
    out = tmp_path / "report.json"
    assert cli("--project", "proj-a,proj-b", "--out-json", str(out)) == 0

    report = json.loads(out.read_text())
    assert [t["label"] for t in report["targets"]] == ["proj-a", "proj-b"]
    assert report["summary"]["access_entries"] == 2
    assert "Access matrix for" in capsys.readouterr().out


def test_fatal_project_failure_exit_code(cli, tmp_path):
    out = tmp_path / "report.json"
    assert cli("--project", "ok", "--project", "broken", "--out-json", str(out)) == 1

    report = json.loads(out.read_text())
    assert [t["label"] for t in report["targets"]] == ["ok"]
    assert report["errors"][0]["project"] == "broken"
    assert report["errors"][0]["stage"] == "principals"


def test_no_project_selected(cli, capsys):
    assert cli() == 2
    assert "No project selected" in capsys.readouterr().err


def test_project_number_needs_single_project(cli):
    assert cli("--project", "a,b", "--project-number", "123") == 2


def test_invalid_page_size(cli, capsys):
    assert cli("--project", "a", "--page-size", "0") == 2
    assert "page_size" in capsys.readouterr().err


def test_unexpected_worker_error_keeps_other_projects(cli, tmp_path):
    out = tmp_path / "report.json"
    assert cli("--project", "ok,crash", "--out-json", str(out)) == 1

    report = json.loads(out.read_text())
    assert [t["label"] for t in report["targets"]] == ["ok"]
    assert report["errors"] == [{"kind": "worker", "project": "crash", "error": "unexpected payload"}]
