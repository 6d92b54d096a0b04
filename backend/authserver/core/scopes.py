"""Scope parsing and the claims each scope releases."""

from typing import Dict, Iterable, List, Optional

SCOPE_DESCRIPTIONS: Dict[str, str] = {
    "openid": "Sign you in with your account",
    "profile": "Read your name, company and job title",
    "email": "Read your email address and whether it is verified",
    "roles": "Read your role assignments",
}

SCOPE_CLAIMS: Dict[str, List[str]] = {
    "openid": ["sub"],
    "profile": ["name", "preferred_username", "company", "job_title"],
    "email": ["email", "email_verified"],
    "roles": ["roles"],
}


def parse_scope(scope: Optional[str]) -> List[str]:
    """Split a space-delimited scope string into a sorted, de-duplicated list."""
    if not scope:
        return []
    return sorted(set(scope.split()))


def format_scope(scopes: Iterable[str]) -> str:
    return " ".join(sorted(set(scopes)))


def describe(scopes: Iterable[str]) -> List[Dict[str, str]]:
    return [
        {"name": name, "description": SCOPE_DESCRIPTIONS.get(name, name)}
        for name in sorted(set(scopes))
    ]


def supported_claims() -> List[str]:
    claims: List[str] = []
    for names in SCOPE_CLAIMS.values():
        for claim in names:
            if claim not in claims:
                claims.append(claim)
    return claims
