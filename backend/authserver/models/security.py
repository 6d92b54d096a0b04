"""Security-related persistence models."""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from authserver.core.database import Base, utcnow


class RefreshToken(Base):
    """Refresh token record for rotation/revocation."""

    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    family_id = Column(String(128), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(Integer, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=False)
    authorization_code_id = Column(
        Integer, ForeignKey("oauth_authorization_codes.id", ondelete="SET NULL"), nullable=True, index=True
    )
    rotated_from_id = Column(Integer, ForeignKey("refresh_tokens.id", ondelete="SET NULL"), nullable=True)
    scope = Column(Text, nullable=False, default="")
    revoked = Column(Boolean, default=False, nullable=False)
    revoked_reason = Column(String(32), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="refresh_tokens")
    client = relationship("OAuthClient")
    rotated_from = relationship("RefreshToken", remote_side=[id])

    __table_args__ = (
        Index("idx_refresh_tokens_user_family", "user_id", "family_id"),
    )


class SigningKey(Base):
    """RS256 key pair used by the token signer, addressed by `kid`."""

    __tablename__ = "signing_keys"

    id = Column(Integer, primary_key=True, index=True)
    kid = Column(String(64), unique=True, nullable=False, index=True)
    private_key_pem = Column(Text, nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    retired_at = Column(DateTime, nullable=True)

    # At most one active key, whichever worker writes it.
    __table_args__ = (
        Index(
            "uq_signing_keys_single_active",
            is_active,
            unique=True,
            postgresql_where=is_active.is_(True),
            sqlite_where=is_active.is_(True),
        ),
    )
