"""Admin routes - OAuth client registry and signing key management"""

from fastapi import APIRouter, Depends, status, Request
from sqlalchemy.orm import Session
from typing import List

from authserver.core.database import get_db
from authserver.schemas.client import (
    ClientCreate,
    ClientCredentialsResponse,
    ClientResponse,
    SigningKeyRotationResponse,
)
from authserver.services.audit_service import audit_service
from authserver.services.client_service import client_registry
from authserver.services.signing_service import token_signer
from authserver.api.deps import get_client_ip, get_current_admin_user
from authserver.models.user import User

router = APIRouter()


@router.get("/clients", response_model=List[ClientResponse])
def list_clients(
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """List registered OAuth clients (admin only)"""
    return [client.to_dict() for client in client_registry.list_clients(db)]


@router.post("/clients", response_model=ClientCredentialsResponse, status_code=status.HTTP_201_CREATED)
def create_client(
    client_data: ClientCreate,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """
    Register an OAuth client

    Args:
        client_data: Registration data
        current_user: Current admin user
        db: Database session

    Returns:
        The client and, for confidential clients, its plaintext secret.
        The secret is shown only in this response.
    """
    client, secret = client_registry.create_client(db, client_data)
    audit_service.log_event(
        db,
        user_id=current_user.id,
        action="oauth_client.created",
        target_type="oauth_client",
        target_id=client.client_id,
        ip_address=get_client_ip(request),
        metadata={
            "confidential": client.is_confidential,
            "redirect_uris": list(client.redirect_uris or []),
            "allowed_grant_types": list(client.allowed_grant_types or []),
        },
    )
    return ClientCredentialsResponse(client=ClientResponse(**client.to_dict()), client_secret=secret)


@router.post("/clients/{client_id}/rotate-secret", response_model=ClientCredentialsResponse)
def rotate_client_secret(
    client_id: str,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """Issue a new secret for a confidential client; the old one stops working"""
    client, secret = client_registry.rotate_secret(db, client_id)
    audit_service.log_event(
        db,
        user_id=current_user.id,
        action="oauth_client.secret_rotated",
        target_type="oauth_client",
        target_id=client.client_id,
        ip_address=get_client_ip(request),
    )
    return ClientCredentialsResponse(client=ClientResponse(**client.to_dict()), client_secret=secret)


@router.post("/signing-keys/rotate", response_model=SigningKeyRotationResponse)
def rotate_signing_key(
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """Activate a new signing key; retired keys stay published until their tokens expire"""
    kid = token_signer.rotate(db)
    audit_service.log_event(
        db,
        user_id=current_user.id,
        action="signing_key.rotated",
        target_type="signing_key",
        target_id=kid,
        ip_address=get_client_ip(request),
    )
    return SigningKeyRotationResponse(kid=kid, published_kids=token_signer.published_kids())
