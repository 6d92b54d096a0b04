"""Proof Key for Code Exchange (RFC 7636), S256 only."""

import base64
import hashlib
import hmac
import re
from typing import Optional

SUPPORTED_METHODS = ("S256",)

# 43-128 characters from the unreserved set
_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
# base64url(sha256) without padding is always 43 characters
_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-_]{43}$")


def is_supported_method(method: Optional[str]) -> bool:
    return method in SUPPORTED_METHODS


def is_valid_challenge(challenge: Optional[str]) -> bool:
    return bool(challenge) and bool(_CHALLENGE_RE.match(challenge))


def compute_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify(code_verifier: Optional[str], stored_challenge: str, method: str) -> bool:
    """
    Check a code_verifier against the challenge stored with the code.

    Returns False for any method other than S256 and for verifiers that do not
    match the RFC 7636 syntax.
    """
    if method != "S256" or not code_verifier or not _VERIFIER_RE.match(code_verifier):
        return False
    return hmac.compare_digest(compute_challenge(code_verifier), stored_challenge)
