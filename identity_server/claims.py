"""
Claims carried by issued tokens and where each claim may go.

claim_destinations is a pure lookup over a static table keyed on claim type; the only dynamic input is
whether the scope that releases a claim was granted.
"""
from dataclasses import dataclass, field

from identity_server.config import ALLOWED_SCOPES, SCOPE_RESOURCES
from identity_server.models import Client, User

ACCESS_TOKEN = "access_token"
ID_TOKEN = "id_token"

TENANT_CLAIM = "tenant_id"
SECURITY_STAMP_CLAIM = "security_stamp"

_BOTH = frozenset({ACCESS_TOKEN, ID_TOKEN})
_ACCESS_ONLY = frozenset({ACCESS_TOKEN})
_NOWHERE = frozenset()

# claim type -> (always, additionally when scope granted, scope)
_DESTINATIONS: dict[str, tuple[frozenset, frozenset, str | None]] = {
    "sub": (_BOTH, _NOWHERE, None),
    TENANT_CLAIM: (_BOTH, _NOWHERE, None),
    "name": (_ACCESS_ONLY, frozenset({ID_TOKEN}), "profile"),
    "preferred_username": (_ACCESS_ONLY, frozenset({ID_TOKEN}), "profile"),
    "email": (_ACCESS_ONLY, frozenset({ID_TOKEN}), "email"),
    SECURITY_STAMP_CLAIM: (_NOWHERE, _NOWHERE, None),
}


def claim_destinations(claim_type: str, scopes: set[str] | frozenset[str]) -> frozenset[str]:
    """Token types a claim may be embedded in, given the granted scopes. Unknown claims: access token only."""
    always, conditional, scope = _DESTINATIONS.get(claim_type, (_ACCESS_ONLY, _NOWHERE, None))
    if scope is not None and scope in scopes:
        return always | conditional
    return always


def normalize_scope(scope: str | None) -> tuple[bool, str]:
    """Return (ok, normalized_scope_or_error)."""
    if not scope or not scope.strip():
        return True, ""
    requested = set(s.strip() for s in scope.split() if s.strip())
    invalid = requested - ALLOWED_SCOPES
    if invalid:
        return False, f"Invalid scope(s): {', '.join(sorted(invalid))}"
    return True, " ".join(sorted(requested))


def resources_for_scopes(scopes) -> list[str]:
    resources = set()
    for s in scopes:
        resources.update(SCOPE_RESOURCES.get(s, []))
    return sorted(resources)


@dataclass
class Principal:
    """Outgoing identity: claims plus the scopes and resources it was granted."""
    claims: dict[str, str]
    scopes: frozenset[str] = field(default_factory=frozenset)
    resources: list[str] = field(default_factory=list)
    # When set, every claim goes to the access token only (client principals)
    access_token_only: bool = False

    @property
    def subject(self) -> str:
        return self.claims["sub"]

    @property
    def tenant_id(self) -> str | None:
        return self.claims.get(TENANT_CLAIM)

    @property
    def scope(self) -> str:
        return " ".join(sorted(self.scopes))

    def claims_for(self, destination: str) -> dict[str, str]:
        out = {}
        for claim_type, value in self.claims.items():
            if value is None:
                continue
            if self.access_token_only:
                if destination == ACCESS_TOKEN and claim_type != SECURITY_STAMP_CLAIM:
                    out[claim_type] = value
                continue
            if destination in claim_destinations(claim_type, self.scopes):
                out[claim_type] = value
        return out


def build_user_principal(user: User, tenant_id: str, scopes, resources=None) -> Principal:
    scopes = frozenset(scopes)
    return Principal(
        claims={
            "sub": user.id,
            "name": user.name,
            "preferred_username": user.username,
            "email": user.email,
            TENANT_CLAIM: tenant_id,
            SECURITY_STAMP_CLAIM: user.security_stamp,
        },
        scopes=scopes,
        resources=list(resources) if resources is not None else resources_for_scopes(scopes),
    )


def build_client_principal(client: Client, tenant_id: str, scopes, resources=None) -> Principal:
    """The client application itself is the subject (client_credentials)."""
    scopes = frozenset(scopes)
    return Principal(
        claims={
            "sub": client.client_id,
            "name": client.display_name,
            TENANT_CLAIM: tenant_id,
        },
        scopes=scopes,
        resources=list(resources) if resources is not None else resources_for_scopes(scopes),
        access_token_only=True,
    )
