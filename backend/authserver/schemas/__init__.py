"""Pydantic schemas for API validation"""

from authserver.schemas.user import UserCreate, UserRole
from authserver.schemas.oauth import (
    AuthorizationCodeGrant,
    RefreshTokenGrant,
    TokenResponse,
    ConsentPromptResponse,
    ConsentDecision,
    ConsentDecisionResponse,
)
from authserver.schemas.client import (
    ClientCreate,
    ClientResponse,
    ClientCredentialsResponse,
    SigningKeyRotationResponse,
)
from authserver.schemas.response import OAuthErrorResponse, HealthResponse

__all__ = [
    "UserCreate", "UserRole",
    "AuthorizationCodeGrant", "RefreshTokenGrant", "TokenResponse",
    "ConsentPromptResponse", "ConsentDecision", "ConsentDecisionResponse",
    "ClientCreate", "ClientResponse", "ClientCredentialsResponse", "SigningKeyRotationResponse",
    "OAuthErrorResponse", "HealthResponse",
]
