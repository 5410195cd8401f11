import pytest

from accessmatrix.principals import OTHER, Principal, parse_member, principals_from_policy


@pytest.mark.parametrize(
    "member,identifier,kind",
    [
        ("user:alice@example.com", "alice@example.com", "user"),
        ("serviceAccount:sa@p.iam.gserviceaccount.com", "sa@p.iam.gserviceaccount.com", "serviceAccount"),
        ("group:admins@example.com", "admins@example.com", "group"),
        ("domain:example.com", "example.com", "domain"),
        ("allUsers", "allUsers", OTHER),
        ("deleted:user:bob@example.com?uid=1", "deleted:user:bob@example.com?uid=1", OTHER),
        ("principalSet://iam.googleapis.com/pool/*", "principalSet://iam.googleapis.com/pool/*", OTHER),
    ],
)
def test_parse_member_prefixes(member, identifier, kind):
    assert parse_member(member) == Principal(identifier=identifier, kind=kind)


@pytest.mark.parametrize("member", ["User:alice@example.com", "USER:alice@example.com", "user:", "", "user"])
def test_parse_member_is_total_and_case_sensitive(member):
    p = parse_member(member)
    assert p.kind == OTHER
    assert p.identifier == member


def test_principals_from_policy_dedups_by_identifier():
    policy = {
        "bindings": [
            {"role": "roles/editor", "members": ["user:alice@example.com", "group:ops@example.com"]},
            {"role": "roles/viewer", "members": ["user:alice@example.com", None, ""]},
            "garbage",
        ]
    }
    out = principals_from_policy(policy)
    assert set(out) == {"alice@example.com", "ops@example.com"}
    assert out["ops@example.com"].kind == "group"


def test_principals_from_empty_policy():
    assert principals_from_policy({}) == {}
    assert principals_from_policy({"bindings": None}) == {}


@pytest.mark.parametrize(
    "member,label",
    [
        ("user:alice@example.com", "individual-user"),
        ("serviceAccount:sa@p.iam.gserviceaccount.com", "workload-identity"),
        ("group:ops@example.com", "group"),
        ("domain:example.com", "domain"),
        ("allUsers", "other"),
    ],
)
def test_to_dict_uses_output_labels(member, label):
    assert parse_member(member).to_dict()["kind"] == label
