from __future__ import annotations

from dataclasses import dataclass


USER = "user"
SERVICE_ACCOUNT = "serviceAccount"
GROUP = "group"
DOMAIN = "domain"
OTHER = "other"

PRINCIPAL_KINDS = (USER, SERVICE_ACCOUNT, GROUP, DOMAIN, OTHER)

# Names used in serialized output.
KIND_LABELS = {
    USER: "individual-user",
    SERVICE_ACCOUNT: "workload-identity",
    GROUP: "group",
    DOMAIN: "domain",
    OTHER: "other",
}

# Closed prefix table; anything unmatched is `other`.
MEMBER_PREFIXES: tuple[tuple[str, str], ...] = (
    ("user:", USER),
    ("serviceAccount:", SERVICE_ACCOUNT),
    ("group:", GROUP),
    ("domain:", DOMAIN),
)


@dataclass(frozen=True)
class Principal:
    identifier: str
    kind: str

    def to_dict(self) -> dict:
        return {"identifier": self.identifier, "kind": KIND_LABELS.get(self.kind, self.kind)}


def parse_member(member: str) -> Principal:
    """
    Parse an IAM member string (`user:alice@example.com`) into a Principal.

    Prefixes are matched case-sensitively and must be followed by a non-empty
    identifier. Unknown shapes (`allUsers`, `deleted:...`, `principalSet://...`)
    keep the raw string as identifier with kind `other`.
    """
    for prefix, kind in MEMBER_PREFIXES:
        if len(member) > len(prefix) and member[: len(prefix)] == prefix:
            return Principal(identifier=member[len(prefix):], kind=kind)
    return Principal(identifier=member, kind=OTHER)


def principals_from_policy(policy: dict) -> dict[str, Principal]:
    """Unique principals of an IAM policy document, keyed by identifier."""
    out: dict[str, Principal] = {}
    for b in policy.get("bindings", []) or []:
        if not isinstance(b, dict):
            continue
        for m in b.get("members", []) or []:
            if not isinstance(m, str) or not m:
                continue
            principal = parse_member(m)
            out.setdefault(principal.identifier, principal)
    return out
