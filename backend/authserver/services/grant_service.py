"""Token endpoint grant handlers: authorization_code and refresh_token."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from authserver.core import pkce
from authserver.core.exceptions import InvalidGrantError, InvalidScopeError
from authserver.core.metrics import SECURITY_EVENTS, TOKENS_ISSUED
from authserver.core.scopes import parse_scope
from authserver.models.client import OAuthClient
from authserver.schemas.oauth import AuthorizationCodeGrant, RefreshTokenGrant
from authserver.services.audit_service import audit_service
from authserver.services.authorization_code_service import authorization_code_service
from authserver.services.token_service import IssuedTokens, token_service
from authserver.services.user_service import user_service

logger = logging.getLogger(__name__)


class GrantService:
    """Validates grants and turns them into token sets in one transaction."""

    @staticmethod
    def exchange_authorization_code(
        db: Session,
        client: OAuthClient,
        grant: AuthorizationCodeGrant,
        ip_address: Optional[str] = None,
    ) -> IssuedTokens:
        """
        Redeem an authorization code.

        Raises:
            InvalidGrantError: Unknown, expired, replayed or mismatched code,
                or a failed PKCE check
        """
        record = authorization_code_service.get_by_code(db, grant.code)
        if record is None:
            raise InvalidGrantError("Invalid authorization code")

        if record.consumed:
            revoked = token_service.revoke_for_authorization_code(db, record.id, "code_replay")
            audit_service.log_event(
                db,
                user_id=record.user_id,
                action="oauth.code_replay",
                target_type="authorization_code",
                target_id=str(record.id),
                ip_address=ip_address,
                metadata={"client_id": client.client_id, "revoked_refresh_tokens": revoked},
                commit=False,
            )
            db.commit()
            SECURITY_EVENTS.labels(event="code_replay").inc()
            logger.warning(
                "Authorization code replay detected: code_id=%s client_id=%s revoked=%s",
                record.id, client.client_id, revoked,
            )
            raise InvalidGrantError("Authorization code has already been used")

        if authorization_code_service.is_expired(record):
            raise InvalidGrantError("Authorization code has expired")

        if grant.redirect_uri != record.redirect_uri:
            raise InvalidGrantError("redirect_uri does not match the authorization request")

        if record.client_id != client.id:
            raise InvalidGrantError("Authorization code was issued to another client")

        if record.code_challenge:
            if not pkce.verify(grant.code_verifier, record.code_challenge, record.code_challenge_method):
                raise InvalidGrantError("PKCE verification failed")
        elif not client.is_confidential or client.pkce_required:
            raise InvalidGrantError("PKCE is required for this client")

        user = user_service.get_active_user(db, record.user_id)
        if user is None:
            raise InvalidGrantError("Resource owner is no longer active")

        try:
            if not authorization_code_service.consume(db, record.id):
                db.rollback()
                logger.info("Lost consume race for authorization code %s", record.id)
                raise InvalidGrantError("Authorization code has already been used")

            tokens = token_service.issue_for_authorization_code(
                db,
                client=client,
                user=user,
                scopes=parse_scope(record.scope),
                authorization_code_id=record.id,
                nonce=record.nonce,
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        TOKENS_ISSUED.labels(grant_type="authorization_code").inc()
        logger.info("Issued tokens for user %s to client %s", user.id, client.client_id)
        return tokens

    @staticmethod
    def exchange_refresh_token(
        db: Session,
        client: OAuthClient,
        grant: RefreshTokenGrant,
        ip_address: Optional[str] = None,
    ) -> IssuedTokens:
        """
        Rotate a refresh token.

        Raises:
            InvalidGrantError: Unknown, expired, revoked or foreign token
            InvalidScopeError: Requested scope exceeds the original grant
        """
        record = token_service.get_refresh_token(db, grant.refresh_token)
        if record is None:
            raise InvalidGrantError("Invalid refresh token")

        # Checked before expiry: a rotated-away token stays evidence of theft
        # after its own lifetime.
        if record.revoked:
            revoked = token_service.revoke_family(db, record.family_id, "reuse_detected")
            audit_service.log_event(
                db,
                user_id=record.user_id,
                action="oauth.refresh_token_reuse",
                target_type="refresh_token_family",
                target_id=record.family_id,
                ip_address=ip_address,
                metadata={"client_id": client.client_id, "revoked_refresh_tokens": revoked},
                commit=False,
            )
            db.commit()
            SECURITY_EVENTS.labels(event="refresh_token_reuse").inc()
            logger.warning(
                "Refresh token reuse detected: family=%s client_id=%s revoked=%s",
                record.family_id, client.client_id, revoked,
            )
            raise InvalidGrantError("Refresh token has been revoked")

        if token_service.is_expired(record):
            raise InvalidGrantError("Invalid refresh token")

        if record.client_id != client.id:
            raise InvalidGrantError("Refresh token was issued to another client")

        granted = parse_scope(record.scope)
        requested = parse_scope(grant.scope) if grant.scope is not None else granted
        if not set(requested) <= set(granted):
            raise InvalidScopeError("Requested scope exceeds the original grant")

        user = user_service.get_active_user(db, record.user_id)
        if user is None:
            raise InvalidGrantError("Resource owner is no longer active")

        try:
            if not token_service.mark_rotated(db, record.id):
                db.rollback()
                logger.info("Lost rotation race for refresh token %s", record.id)
                raise InvalidGrantError("Refresh token has been revoked")

            tokens = token_service.issue_rotated(
                db, client=client, user=user, previous=record, access_scopes=requested
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        TOKENS_ISSUED.labels(grant_type="refresh_token").inc()
        return tokens


grant_service = GrantService()
