from accessmatrix.identifiers import ResourceKey
from accessmatrix.matrix import assemble_matrix, group_roles
from accessmatrix.principals import parse_member
from accessmatrix.resources import DIRECT, INHERITED, AccessFact, Resource


VM = ResourceKey("vm", "vm-1")
BUCKET = ResourceKey("storage", "logs")


def _resources(*keys):
    return [Resource(key=k, resource_id=k.name, name=k.name) for k in keys]


def test_direct_and_inherited_roles_are_grouped():
    facts = [
        AccessFact("alice@example.com", VM, "roles/viewer", DIRECT),
        AccessFact("alice@example.com", VM, "roles/editor", INHERITED),
    ]
    matrix = assemble_matrix(
        project_id="p",
        principals={"alice@example.com": parse_member("user:alice@example.com")},
        resources=_resources(VM),
        facts=facts,
    )
    assert len(matrix.entries) == 1
    assert set(matrix.entry("alice@example.com", VM).roles) == {"roles/viewer", "roles/editor"}


def test_referenced_principals_are_always_listed():
    matrix = assemble_matrix(
        project_id="p",
        principals={},
        resources=_resources(VM),
        facts=[AccessFact("allUsers", VM, "roles/viewer")],
    )
    assert [p.identifier for p in matrix.principals] == ["allUsers"]
    assert matrix.principals[0].kind == "other"
    listed = {p.identifier for p in matrix.principals}
    assert all(e.principal in listed for e in matrix.entries)


def test_facts_on_untracked_resources_are_dropped():
    matrix = assemble_matrix(
        project_id="p",
        principals={},
        resources=_resources(VM),
        facts=[AccessFact("a@example.com", BUCKET, "roles/viewer")],
    )
    assert matrix.entries == []


def test_output_is_sorted_and_stable():
    facts = [
        AccessFact("zed@example.com", VM, "roles/viewer"),
        AccessFact("amy@example.com", VM, "roles/viewer"),
        AccessFact("amy@example.com", BUCKET, "roles/viewer"),
    ]
    kwargs = dict(project_id="p", principals={}, resources=_resources(VM, BUCKET))
    first = assemble_matrix(facts=facts, **kwargs)
    second = assemble_matrix(facts=list(reversed(facts)), **kwargs)

    assert [(e.principal, e.resource.canonical_id) for e in first.entries] == [
        ("amy@example.com", "storage:logs"),
        ("amy@example.com", "vm:vm-1"),
        ("zed@example.com", "vm:vm-1"),
    ]
    assert [r.canonical_id for r in first.resources] == ["storage:logs", "vm:vm-1"]
    assert first.to_dict() == second.to_dict()


def test_to_dict_shape():
    matrix = assemble_matrix(
        project_id="p",
        principals={"alice@example.com": parse_member("user:alice@example.com")},
        resources=_resources(VM),
        facts=[AccessFact("alice@example.com", VM, "roles/editor", INHERITED)],
        errors=[{"kind": "inventory", "backend": "gke", "error": "boom"}],
    )
    out = matrix.to_dict()
    assert out["projectId"] == "p"
    assert out["principals"] == [{"identifier": "alice@example.com", "kind": "individual-user"}]
    assert out["accessEntries"] == [
        {
            "principal": "alice@example.com",
            "resource": "vm:vm-1",
            "resourceName": "vm-1",
            "resourceKind": "vm",
            "roles": ["roles/editor"],
        }
    ]
    assert out["errors"][0]["backend"] == "gke"


def test_group_roles():
    grouped = group_roles(
        [
            AccessFact("a", VM, "roles/viewer"),
            AccessFact("a", VM, "roles/viewer", INHERITED),
            AccessFact("a", BUCKET, "roles/owner"),
        ]
    )
    assert grouped == {("a", VM): {"roles/viewer"}, ("a", BUCKET): {"roles/owner"}}
