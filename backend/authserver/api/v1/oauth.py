"""OAuth 2.1 protocol routes - authorize, token, userinfo"""

from fastapi import APIRouter, Depends, Form, Header, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
from typing import Optional
import logging

from authserver.core.database import get_db
from authserver.core.exceptions import (
    AuthorizationRedirectError,
    InvalidRequestError,
    InvalidTokenError,
    TokenExpiredError,
    TokenInvalidError,
    UnsupportedGrantTypeError,
)
from authserver.core.scopes import parse_scope
from authserver.schemas.response import OAuthErrorResponse
from authserver.schemas.oauth import (
    SUPPORTED_GRANT_TYPES,
    AuthorizationCodeGrant,
    TokenResponse,
    token_request_adapter,
)
from authserver.services.authorization_service import (
    AuthorizationRequest,
    authorization_service,
    error_redirect_url,
)
from authserver.services.client_service import client_registry, extract_client_credentials
from authserver.services.grant_service import grant_service
from authserver.services.signing_service import token_signer
from authserver.services.token_service import token_service
from authserver.services.user_service import user_service
from authserver.api.deps import get_client_ip, get_optional_session_user
from authserver.models.user import User

logger = logging.getLogger(__name__)

router = APIRouter()

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}
OAUTH_ERROR_RESPONSES = {400: {"model": OAuthErrorResponse}, 401: {"model": OAuthErrorResponse}}


@router.get("/authorize")
def authorize(
    request: Request,
    client_id: Optional[str] = None,
    redirect_uri: Optional[str] = None,
    response_type: Optional[str] = None,
    scope: Optional[str] = None,
    state: Optional[str] = None,
    nonce: Optional[str] = None,
    code_challenge: Optional[str] = None,
    code_challenge_method: Optional[str] = None,
    user: Optional[User] = Depends(get_optional_session_user),
    db: Session = Depends(get_db)
):
    """
    Authorization endpoint (authorization code flow only)

    Redirects to the login page, the consent page, or back to the client
    with either `code` or `error`. Requests whose client or redirect URI
    cannot be trusted get a direct JSON error instead.
    """
    auth_request = AuthorizationRequest(
        client_id=client_id,
        redirect_uri=redirect_uri,
        response_type=response_type,
        scope=scope,
        state=state,
        nonce=nonce,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
    )
    return_to = request.url.path
    if request.url.query:
        return_to = f"{return_to}?{request.url.query}"

    try:
        location = authorization_service.authorize(db, auth_request, user, return_to)
    except AuthorizationRedirectError as exc:
        logger.info("Authorization request for client %s rejected: %s", client_id, exc.error)
        location = error_redirect_url(exc)

    return RedirectResponse(location, status_code=302)


@router.post(
    "/token",
    response_model=TokenResponse,
    response_model_exclude_none=True,
    responses=OAUTH_ERROR_RESPONSES,
)
def token(
    request: Request,
    response: Response,
    grant_type: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    code_verifier: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
    scope: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    db: Session = Depends(get_db)
):
    """
    Token endpoint

    Client credentials are accepted in the form body or as HTTP Basic;
    the body is validated into the grant-specific request type.
    """
    credentials = extract_client_credentials(
        request.headers.get("Authorization"), client_id, client_secret
    )
    client = client_registry.authenticate(db, credentials)

    if not grant_type:
        raise InvalidRequestError("grant_type is required")
    if grant_type not in SUPPORTED_GRANT_TYPES:
        raise UnsupportedGrantTypeError(f"Unsupported grant_type: {grant_type}")

    fields = {
        "grant_type": grant_type,
        "code": code,
        "redirect_uri": redirect_uri,
        "code_verifier": code_verifier,
        "refresh_token": refresh_token,
        "scope": scope,
    }
    try:
        grant = token_request_adapter.validate_python(
            {key: value for key, value in fields.items() if value is not None}
        )
    except PydanticValidationError as exc:
        names = ", ".join(str(err["loc"][-1]) for err in exc.errors())
        raise InvalidRequestError(f"Missing or invalid parameter: {names}")

    client_registry.ensure_grant_allowed(client, grant.grant_type)

    ip_address = get_client_ip(request)
    if isinstance(grant, AuthorizationCodeGrant):
        issued = grant_service.exchange_authorization_code(db, client, grant, ip_address)
    else:
        issued = grant_service.exchange_refresh_token(db, client, grant, ip_address)

    response.headers.update(NO_STORE_HEADERS)
    return TokenResponse(
        access_token=issued.access_token,
        expires_in=issued.expires_in,
        refresh_token=issued.refresh_token,
        id_token=issued.id_token,
        scope=issued.scope,
    )


@router.api_route("/userinfo", methods=["GET", "POST"], responses=OAUTH_ERROR_RESPONSES)
def userinfo(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db)
):
    """
    OpenID Connect userinfo endpoint

    Returns the claims the access token's scope allows, re-read from the
    user record.
    """
    scheme, _, value = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        raise InvalidTokenError("Bearer access token required")

    try:
        claims = token_signer.verify(value.strip(), db=db)
    except TokenExpiredError:
        raise InvalidTokenError("The access token has expired")
    except TokenInvalidError as exc:
        raise InvalidTokenError(exc.message)

    if claims.get("typ") != "access":
        raise InvalidTokenError("Not an access token")
    if not token_service.is_family_active(db, claims.get("fam")):
        raise InvalidTokenError("The access token has been revoked")

    user = user_service.get_active_user(db, claims.get("sub"))
    if user is None:
        raise InvalidTokenError("Unknown subject")

    return JSONResponse(
        user_service.build_claims(user, parse_scope(claims.get("scope"))),
        headers=NO_STORE_HEADERS,
    )
