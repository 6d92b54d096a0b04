"""Discovery metadata and public signing keys"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from authserver.config import settings
from authserver.core.database import get_db
from authserver.core.scopes import supported_claims
from authserver.schemas.oauth import SUPPORTED_GRANT_TYPES
from authserver.services.signing_service import ALGORITHM, token_signer

router = APIRouter()


@router.get("/openid-configuration")
def openid_configuration():
    """OpenID Provider metadata"""
    return {
        "issuer": settings.OAUTH_ISSUER,
        "authorization_endpoint": settings.endpoint_url("/oauth/authorize"),
        "token_endpoint": settings.endpoint_url("/oauth/token"),
        "userinfo_endpoint": settings.endpoint_url("/oauth/userinfo"),
        "jwks_uri": settings.endpoint_url("/.well-known/jwks.json"),
        "response_types_supported": ["code"],
        "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [ALGORITHM],
        "code_challenge_methods_supported": ["S256"],
        "token_endpoint_auth_methods_supported": [
            "client_secret_basic",
            "client_secret_post",
            "none",
        ],
        "scopes_supported": list(settings.OAUTH_ALLOWED_SCOPES),
        "claims_supported": supported_claims() + ["iss", "aud", "exp", "iat", "auth_time", "nonce"],
    }


@router.get("/jwks.json")
def jwks(db: Session = Depends(get_db)):
    """Public keys for verifying issued tokens"""
    token_signer.sync(db)
    return JSONResponse(token_signer.jwks(), headers={"Cache-Control": "public, max-age=300"})
