"""Authorization endpoint flow: request validation, login hand-off, consent, code issuance."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from authserver.config import settings
from authserver.core import pkce
from authserver.core.exceptions import (
    AuthorizationRedirectError,
    InvalidRequestError,
    InvalidScopeError,
    OAuthError,
    ServerError,
    UnauthorizedClientError,
    UnsupportedResponseTypeError,
)
from authserver.core.scopes import describe, parse_scope
from authserver.models.authorization import PendingAuthorization
from authserver.models.client import OAuthClient
from authserver.models.user import User
from authserver.schemas.oauth import ConsentApplication, ConsentPromptResponse, ScopeDescription
from authserver.services.audit_service import audit_service
from authserver.services.authorization_code_service import authorization_code_service
from authserver.services.client_service import client_registry
from authserver.services.consent_service import consent_service

logger = logging.getLogger(__name__)


@dataclass
class AuthorizationRequest:
    """Query parameters of a `/oauth/authorize` request"""

    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    response_type: Optional[str] = None
    scope: Optional[str] = None
    state: Optional[str] = None
    nonce: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


def build_redirect_url(base: str, **params: Optional[str]) -> str:
    """
    Append parameters to a redirect URI, keeping its existing query string.
    Parameters whose value is None are left out.
    """
    parts = urlsplit(base)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def error_redirect_url(exc: AuthorizationRedirectError) -> str:
    return build_redirect_url(
        exc.redirect_uri,
        error=exc.error,
        error_description=exc.description,
        state=exc.state,
    )


def login_redirect_url(return_to: str) -> str:
    return build_redirect_url(settings.OAUTH_LOGIN_URL, return_to=return_to)


class AuthorizationService:
    """Drives an authorization request from validation to the final redirect."""

    @staticmethod
    def validate_request(db: Session, request: AuthorizationRequest) -> Tuple[OAuthClient, List[str]]:
        """
        Validate an authorization request.

        Failures before the redirect URI is trusted raise plain OAuth errors
        (rendered directly); later failures raise AuthorizationRedirectError.
        """
        client = client_registry.lookup(db, request.client_id)
        if client is None:
            raise InvalidRequestError("Unknown client_id")

        if not client_registry.is_registered_redirect_uri(client, request.redirect_uri):
            raise InvalidRequestError("redirect_uri is not registered for this client")

        if request.response_type != "code":
            raise UnsupportedResponseTypeError("Only response_type=code is supported")

        if request.code_challenge:
            if not pkce.is_supported_method(request.code_challenge_method):
                raise InvalidRequestError("code_challenge_method must be S256")
            if not pkce.is_valid_challenge(request.code_challenge):
                raise InvalidRequestError("Malformed code_challenge")
        elif not client.is_confidential or client.pkce_required:
            raise InvalidRequestError("code_challenge is required for this client")

        def redirect(cause: OAuthError) -> AuthorizationRedirectError:
            return AuthorizationRedirectError(cause, request.redirect_uri, request.state)

        if "authorization_code" not in (client.allowed_grant_types or []):
            raise redirect(UnauthorizedClientError("Client may not use the authorization code grant"))

        scopes = parse_scope(request.scope)
        unknown = [s for s in scopes if s not in settings.OAUTH_ALLOWED_SCOPES]
        if unknown:
            raise redirect(InvalidScopeError(f"Unsupported scope: {' '.join(unknown)}"))

        return client, scopes

    @staticmethod
    def authorize(
        db: Session,
        request: AuthorizationRequest,
        user: Optional[User],
        return_to: str,
    ) -> str:
        """
        Run the authorization request and return the URL to redirect to:
        the login page, the consent page, or the client with a code.

        Raises:
            OAuthError: Request rejected before the redirect URI was verified
            AuthorizationRedirectError: Request rejected afterwards
        """
        client, scopes = AuthorizationService.validate_request(db, request)

        if user is None:
            return login_redirect_url(return_to)

        try:
            if client.is_first_party or consent_service.covers(db, user.id, client.id, scopes):
                consent_service.touch(db, user.id, client.id)
                code, _ = authorization_code_service.create(
                    db,
                    client_id=client.id,
                    user_id=user.id,
                    redirect_uri=request.redirect_uri,
                    scopes=scopes,
                    state=request.state,
                    nonce=request.nonce,
                    code_challenge=request.code_challenge,
                    code_challenge_method=request.code_challenge_method,
                )
                db.commit()
                logger.info("Issued authorization code for user %s to client %s", user.id, client.client_id)
                return build_redirect_url(request.redirect_uri, code=code, state=request.state)

            request_id, _ = consent_service.create_pending(
                db,
                client_id=client.id,
                user_id=user.id,
                redirect_uri=request.redirect_uri,
                scopes=scopes,
                state=request.state,
                nonce=request.nonce,
                code_challenge=request.code_challenge,
                code_challenge_method=request.code_challenge_method,
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Authorization request failed for client %s", client.client_id)
            raise AuthorizationRedirectError(
                ServerError("Authorization server error"), request.redirect_uri, request.state
            )

        return build_redirect_url(settings.OAUTH_CONSENT_URL, request_id=request_id)

    # --- consent continuation ---

    @staticmethod
    def _load_pending(db: Session, request_id: str, user: User) -> PendingAuthorization:
        pending = consent_service.get_pending(db, request_id, user.id)
        if pending is None:
            raise InvalidRequestError("Unknown or expired authorization request")
        return pending

    @staticmethod
    def consent_prompt(db: Session, request_id: str, user: User) -> ConsentPromptResponse:
        pending = AuthorizationService._load_pending(db, request_id, user)
        client = pending.client
        return ConsentPromptResponse(
            request_id=request_id,
            application=ConsentApplication(
                client_id=client.client_id,
                name=client.name,
                description=client.description,
                logo_url=client.logo_url,
            ),
            redirect_uri=pending.redirect_uri,
            scopes=[ScopeDescription(**item) for item in describe(parse_scope(pending.scope))],
            expires_at=pending.expires_at.isoformat(),
        )

    @staticmethod
    def decide(
        db: Session,
        request_id: str,
        approved: bool,
        user: User,
        ip_address: Optional[str] = None,
    ) -> str:
        """
        Record a consent decision and return the client redirect URL: a code
        on approval, `access_denied` otherwise.
        """
        pending = AuthorizationService._load_pending(db, request_id, user)
        client = pending.client
        scopes = parse_scope(pending.scope)
        redirect_uri = pending.redirect_uri
        state = pending.state

        try:
            if not consent_service.take_pending(db, pending.id):
                db.rollback()
                raise InvalidRequestError("Unknown or expired authorization request")

            if not approved:
                audit_service.log_event(
                    db,
                    user_id=user.id,
                    action="consent.denied",
                    target_type="oauth_client",
                    target_id=client.client_id,
                    ip_address=ip_address,
                    metadata={"scope": pending.scope},
                    commit=False,
                )
                db.commit()
                logger.info("User %s denied consent for client %s", user.id, client.client_id)
                return build_redirect_url(
                    redirect_uri,
                    error="access_denied",
                    error_description="The user denied the request",
                    state=state,
                )

            consent_service.grant(db, user.id, client.id, scopes)
            code, _ = authorization_code_service.create(
                db,
                client_id=client.id,
                user_id=user.id,
                redirect_uri=redirect_uri,
                scopes=scopes,
                state=state,
                nonce=pending.nonce,
                code_challenge=pending.code_challenge,
                code_challenge_method=pending.code_challenge_method,
            )
            audit_service.log_event(
                db,
                user_id=user.id,
                action="consent.granted",
                target_type="oauth_client",
                target_id=client.client_id,
                ip_address=ip_address,
                metadata={"scope": pending.scope},
                commit=False,
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Consent decision failed for client %s", client.client_id)
            return build_redirect_url(
                redirect_uri,
                error="server_error",
                error_description="Authorization server error",
                state=state,
            )

        logger.info("User %s granted consent to client %s", user.id, client.client_id)
        return build_redirect_url(redirect_uri, code=code, state=state)


authorization_service = AuthorizationService()
