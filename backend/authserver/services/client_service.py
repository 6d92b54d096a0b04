"""Client registry - OAuth client lookup, authentication and administration"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import unquote_plus

from sqlalchemy.orm import Session

from authserver.core.database import utcnow
from authserver.core.exceptions import (
    InvalidClientError,
    InvalidRequestError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    UnauthorizedClientError,
    ValidationError,
)
from authserver.core.security import (
    constant_time_equals,
    generate_client_secret,
    generate_token,
    get_secret_hash,
    verify_secret,
)
from authserver.models.client import OAuthClient
from authserver.schemas.client import ClientCreate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientCredentials:
    """Client identity as presented to the token endpoint."""

    client_id: Optional[str]
    client_secret: Optional[str]
    method: str  # client_secret_basic | client_secret_post | none


def parse_basic_authorization(header: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Decode an HTTP Basic `Authorization` header into (client_id, client_secret).

    Both components are form-urlencoded before base64 encoding (RFC 6749
    section 2.3.1). Returns None when the header is absent or not Basic.
    """
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(value.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise InvalidRequestError("Malformed Basic authorization header")
    if ":" not in decoded:
        raise InvalidRequestError("Malformed Basic authorization header")
    client_id, client_secret = decoded.split(":", 1)
    return unquote_plus(client_id), unquote_plus(client_secret)


def extract_client_credentials(
    authorization_header: Optional[str],
    body_client_id: Optional[str],
    body_client_secret: Optional[str],
) -> ClientCredentials:
    """
    Merge Basic-auth and POST-body client credentials.

    Both may be present only if they agree; any disagreement in id or secret
    is an `invalid_request`.
    """
    body_client_id = body_client_id or None
    body_client_secret = body_client_secret or None
    basic = parse_basic_authorization(authorization_header)

    if basic is None:
        method = "client_secret_post" if body_client_secret else "none"
        return ClientCredentials(body_client_id, body_client_secret, method)

    basic_id, basic_secret = basic
    basic_secret = basic_secret or None
    if body_client_id is not None and not constant_time_equals(body_client_id, basic_id):
        raise InvalidRequestError("client_id in request body does not match Basic credentials")
    if body_client_secret is not None and not constant_time_equals(body_client_secret, basic_secret):
        raise InvalidRequestError("client_secret in request body does not match Basic credentials")
    return ClientCredentials(basic_id, basic_secret, "client_secret_basic")


class ClientRegistry:
    """Stores and validates OAuth client records"""

    @staticmethod
    def lookup(db: Session, client_id: Optional[str]) -> Optional[OAuthClient]:
        if not client_id:
            return None
        return db.query(OAuthClient).filter(OAuthClient.client_id == client_id).first()

    @staticmethod
    def authenticate(db: Session, credentials: ClientCredentials) -> OAuthClient:
        """
        Authenticate the calling client

        Confidential clients must present their secret; public clients are
        accepted without one (any presented secret is ignored) and rely on PKCE.

        Raises:
            InvalidClientError: Unknown client, missing or wrong secret
        """
        if not credentials.client_id:
            raise InvalidClientError("Client identification is required")

        client = ClientRegistry.lookup(db, credentials.client_id)
        if not client:
            raise InvalidClientError("Unknown client")

        if not client.is_confidential:
            return client

        if not credentials.client_secret:
            raise InvalidClientError("Client secret is required for confidential clients")
        if not verify_secret(credentials.client_secret, client.client_secret_hash):
            logger.warning("Client authentication failed for client_id=%s", client.client_id)
            raise InvalidClientError("Invalid client credentials")
        return client

    @staticmethod
    def is_registered_redirect_uri(client: OAuthClient, redirect_uri: Optional[str]) -> bool:
        """Exact string comparison only; no prefix, wildcard or normalization."""
        if not redirect_uri:
            return False
        return redirect_uri in (client.redirect_uris or [])

    @staticmethod
    def ensure_grant_allowed(client: OAuthClient, grant_type: str) -> None:
        if grant_type not in (client.allowed_grant_types or []):
            raise UnauthorizedClientError(
                f"Client is not allowed to use the {grant_type} grant"
            )

    # --- administration ---

    @staticmethod
    def list_clients(db: Session) -> List[OAuthClient]:
        return db.query(OAuthClient).order_by(OAuthClient.created_at.asc()).all()

    @staticmethod
    def create_client(db: Session, data: ClientCreate) -> Tuple[OAuthClient, Optional[str]]:
        """
        Register a client

        Args:
            db: Database session
            data: Registration data

        Returns:
            Tuple of (client, plaintext secret or None for public clients).
            The plaintext secret is never stored and cannot be retrieved later.
        """
        if not data.confidential and not data.pkce_required:
            raise ValidationError("Public clients must require PKCE")

        client_id = data.client_id or f"client_{generate_token(12)}"
        if ClientRegistry.lookup(db, client_id):
            raise ResourceAlreadyExistsError(f"Client '{client_id}'")

        secret = generate_client_secret() if data.confidential else None
        client = OAuthClient(
            client_id=client_id,
            client_secret_hash=get_secret_hash(secret) if secret else None,
            name=data.name,
            description=data.description,
            logo_url=data.logo_url,
            redirect_uris=list(data.redirect_uris),
            allowed_grant_types=list(data.allowed_grant_types),
            pkce_required=True if not data.confidential else data.pkce_required,
            is_first_party=data.is_first_party,
        )
        db.add(client)
        db.commit()
        db.refresh(client)

        logger.info(
            "Registered %s client %s",
            "confidential" if secret else "public",
            client.client_id,
        )
        return client, secret

    @staticmethod
    def rotate_secret(db: Session, client_id: str) -> Tuple[OAuthClient, str]:
        """Replace a confidential client's secret; the old one stops working immediately."""
        client = ClientRegistry.lookup(db, client_id)
        if not client:
            raise ResourceNotFoundError("Client")
        if not client.is_confidential:
            raise ValidationError("Public clients have no secret to rotate")

        secret = generate_client_secret()
        client.client_secret_hash = get_secret_hash(secret)
        client.secret_rotated_at = utcnow()
        db.commit()
        db.refresh(client)

        logger.info("Rotated secret for client %s", client.client_id)
        return client, secret


client_registry = ClientRegistry()
