"""Authorization-flow records: codes, pending requests, consents"""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from authserver.core.database import Base, utcnow


class AuthorizationCode(Base):
    """Single-use, short-lived authorization code (stored hashed)"""

    __tablename__ = "oauth_authorization_codes"

    id = Column(Integer, primary_key=True, index=True)
    code_hash = Column(String(64), unique=True, nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    redirect_uri = Column(Text, nullable=False)
    scope = Column(Text, nullable=False, default="")
    state = Column(Text, nullable=True)
    nonce = Column(String(255), nullable=True)
    code_challenge = Column(String(128), nullable=True)
    code_challenge_method = Column(String(10), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    consumed = Column(Boolean, default=False, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    client = relationship("OAuthClient")
    user = relationship("User")

    __table_args__ = (
        Index('idx_auth_codes_expires_at', 'expires_at'),
    )

    def __repr__(self):
        return f"<AuthorizationCode(id={self.id}, client_id={self.client_id}, consumed={self.consumed})>"


class PendingAuthorization(Base):
    """Authorization request parked while the user decides on consent"""

    __tablename__ = "oauth_pending_authorizations"

    id = Column(Integer, primary_key=True, index=True)
    request_id_hash = Column(String(64), unique=True, nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    redirect_uri = Column(Text, nullable=False)
    scope = Column(Text, nullable=False, default="")
    state = Column(Text, nullable=True)
    nonce = Column(String(255), nullable=True)
    code_challenge = Column(String(128), nullable=True)
    code_challenge_method = Column(String(10), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    client = relationship("OAuthClient")


class Consent(Base):
    """Scopes a user has granted to a client"""

    __tablename__ = "oauth_consents"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(Integer, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=False)
    granted_scopes = Column(Text, nullable=False, default="")
    granted_at = Column(DateTime, default=utcnow, nullable=False)
    last_used_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="consents")
    client = relationship("OAuthClient")

    __table_args__ = (
        UniqueConstraint('user_id', 'client_id', name='uq_consent_user_client'),
    )

    def __repr__(self):
        return f"<Consent(user_id={self.user_id}, client_id={self.client_id}, scopes='{self.granted_scopes}')>"
