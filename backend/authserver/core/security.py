"""Security utilities - secret hashing, opaque token generation"""

import hashlib
import hmac
import secrets
from typing import Optional

import bcrypt

# bcrypt only looks at the first 72 bytes of its input
_BCRYPT_MAX_BYTES = 72


def verify_secret(plain_secret: str, hashed_secret: str) -> bool:
    """
    Verify a client secret against its bcrypt hash

    Args:
        plain_secret: Secret as presented by the client
        hashed_secret: Stored bcrypt hash

    Returns:
        bool: True if the secret matches
    """
    encoded = plain_secret.encode('utf-8')
    if not encoded or len(encoded) > _BCRYPT_MAX_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, hashed_secret.encode('utf-8'))
    except ValueError:
        # Malformed stored hash
        return False


def get_secret_hash(secret: str) -> str:
    """
    Hash a client secret using bcrypt

    Args:
        secret: Plain text secret

    Returns:
        str: Hashed secret
    """
    return bcrypt.hashpw(
        secret.encode('utf-8'),
        bcrypt.gensalt()
    ).decode('utf-8')


def generate_client_secret() -> str:
    """43 url-safe characters, well inside bcrypt's input limit."""
    return secrets.token_urlsafe(32)


def generate_token(nbytes: int = 32) -> str:
    """
    Generate a high-entropy opaque token (authorization codes, refresh tokens,
    correlation ids)
    """
    return secrets.token_urlsafe(nbytes)


def hash_token(token: str) -> str:
    """SHA-256 digest used to store opaque tokens at rest."""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def constant_time_equals(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return a is b
    return hmac.compare_digest(a.encode('utf-8'), b.encode('utf-8'))
