"""OAuth client admin schemas"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

GrantType = Literal["authorization_code", "refresh_token"]


class ClientCreate(BaseModel):
    """Register a new OAuth client"""
    client_id: Optional[str] = Field(None, min_length=3, max_length=128, pattern=r'^[A-Za-z0-9_.-]+$')
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    logo_url: Optional[str] = None
    redirect_uris: List[str] = Field(..., min_length=1)
    confidential: bool = True
    pkce_required: bool = True
    is_first_party: bool = False
    allowed_grant_types: List[GrantType] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )

    @field_validator('redirect_uris')
    @classmethod
    def validate_redirect_uris(cls, v):
        """Absolute http(s) URIs without fragments; stored verbatim for exact matching"""
        for uri in v:
            if not uri.startswith(("https://", "http://")):
                raise ValueError(f'Redirect URI "{uri}" must be an absolute http(s) URI')
            if "#" in uri:
                raise ValueError(f'Redirect URI "{uri}" must not contain a fragment')
        if len(v) != len(set(v)):
            raise ValueError('Duplicate redirect URIs')
        return v

    @field_validator('allowed_grant_types')
    @classmethod
    def dedupe_grant_types(cls, v):
        if not v:
            raise ValueError('At least one grant type is required')
        return sorted(set(v))

    @model_validator(mode='after')
    def public_clients_require_pkce(self):
        if not self.confidential and not self.pkce_required:
            raise ValueError('Public clients must require PKCE')
        return self


class ClientResponse(BaseModel):
    """Client registration as shown to administrators"""
    client_id: str
    name: str
    description: Optional[str] = None
    logo_url: Optional[str] = None
    redirect_uris: List[str]
    allowed_grant_types: List[str]
    pkce_required: bool
    is_first_party: bool
    confidential: bool
    created_at: Optional[datetime] = None
    secret_rotated_at: Optional[datetime] = None


class ClientCredentialsResponse(BaseModel):
    """Returned once, at creation or secret rotation"""
    client: ClientResponse
    client_secret: Optional[str] = None


class SigningKeyRotationResponse(BaseModel):
    kid: str
    published_kids: List[str]
