"""OAuth protocol request/response schemas"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class AuthorizationCodeGrant(BaseModel):
    """`grant_type=authorization_code` token request"""
    grant_type: Literal["authorization_code"]
    code: str = Field(..., min_length=1)
    redirect_uri: str = Field(..., min_length=1)
    code_verifier: Optional[str] = None


class RefreshTokenGrant(BaseModel):
    """`grant_type=refresh_token` token request"""
    grant_type: Literal["refresh_token"]
    refresh_token: str = Field(..., min_length=1)
    scope: Optional[str] = None


TokenRequest = Annotated[
    Union[AuthorizationCodeGrant, RefreshTokenGrant],
    Field(discriminator="grant_type"),
]

token_request_adapter = TypeAdapter(TokenRequest)

SUPPORTED_GRANT_TYPES = ("authorization_code", "refresh_token")


class TokenResponse(BaseModel):
    """Successful token endpoint response"""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: str = ""


class ScopeDescription(BaseModel):
    name: str
    description: str


class ConsentApplication(BaseModel):
    client_id: str
    name: str
    description: Optional[str] = None
    logo_url: Optional[str] = None


class ConsentPromptResponse(BaseModel):
    """Data the consent UI renders for a pending authorization request"""
    request_id: str
    application: ConsentApplication
    redirect_uri: str
    scopes: List[ScopeDescription]
    expires_at: str


class ConsentDecision(BaseModel):
    """Consent UI decision"""
    request_id: str = Field(..., min_length=1)
    approved: bool


class ConsentDecisionResponse(BaseModel):
    redirect_url: str
