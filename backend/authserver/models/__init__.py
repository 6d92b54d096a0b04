"""Database models"""

from authserver.models.user import User
from authserver.models.client import OAuthClient
from authserver.models.authorization import AuthorizationCode, Consent, PendingAuthorization
from authserver.models.security import RefreshToken, SigningKey
from authserver.models.audit import AuditEvent

__all__ = [
    "User",
    "OAuthClient",
    "AuthorizationCode",
    "Consent",
    "PendingAuthorization",
    "RefreshToken",
    "SigningKey",
    "AuditEvent",
]
