"""OAuth client registration model"""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, JSON, CheckConstraint
from authserver.core.database import Base, utcnow


class OAuthClient(Base):
    """Registered OAuth client - public (no secret, PKCE) or confidential"""

    __tablename__ = "oauth_clients"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(String(128), unique=True, nullable=False, index=True)
    client_secret_hash = Column(String(255), nullable=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    logo_url = Column(String(512), nullable=True)
    redirect_uris = Column(JSON, nullable=False, default=list)
    allowed_grant_types = Column(JSON, nullable=False, default=lambda: ["authorization_code", "refresh_token"])
    pkce_required = Column(Boolean, default=True, nullable=False)
    is_first_party = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    secret_rotated_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "client_secret_hash IS NOT NULL OR pkce_required",
            name="chk_public_client_requires_pkce",
        ),
    )

    @property
    def is_confidential(self) -> bool:
        return self.client_secret_hash is not None

    def __repr__(self):
        kind = "confidential" if self.is_confidential else "public"
        return f"<OAuthClient(id={self.id}, client_id='{self.client_id}', {kind})>"

    def to_dict(self):
        """Convert to dictionary"""
        return {
            "client_id": self.client_id,
            "name": self.name,
            "description": self.description,
            "logo_url": self.logo_url,
            "redirect_uris": list(self.redirect_uris or []),
            "allowed_grant_types": list(self.allowed_grant_types or []),
            "pkce_required": self.pkce_required,
            "is_first_party": self.is_first_party,
            "confidential": self.is_confidential,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "secret_rotated_at": self.secret_rotated_at.isoformat() if self.secret_rotated_at else None,
        }
