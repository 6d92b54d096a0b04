"""Refresh token rotation/revocation and access/ID token issuance."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from authserver.config import settings
from authserver.core.database import utcnow
from authserver.core.scopes import format_scope
from authserver.core.security import generate_token, hash_token
from authserver.models.client import OAuthClient
from authserver.models.security import RefreshToken
from authserver.models.user import User
from authserver.services.signing_service import TokenSigner, token_signer
from authserver.services.user_service import user_service

logger = logging.getLogger(__name__)


@dataclass
class IssuedTokens:
    access_token: str
    expires_in: int
    scope: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None


class TokenService:
    """Manage refresh-token family lifecycle and mint signed tokens."""

    def __init__(self, signer: TokenSigner) -> None:
        self.signer = signer

    # --- signed tokens ---

    def create_access_token(
        self,
        *,
        user: User,
        client: OAuthClient,
        scopes: Iterable[str],
        family_id: str,
    ) -> str:
        now = int(time.time())
        claims = {
            "iss": settings.OAUTH_ISSUER,
            "sub": str(user.id),
            "aud": client.client_id,
            "client_id": client.client_id,
            "scope": format_scope(scopes),
            "iat": now,
            "exp": now + settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            "jti": secrets.token_urlsafe(16),
            "typ": "access",
            "fam": family_id,
        }
        return self.signer.sign(claims)

    def create_id_token(
        self,
        *,
        user: User,
        client: OAuthClient,
        scopes: Iterable[str],
        nonce: Optional[str] = None,
    ) -> str:
        now = int(time.time())
        claims: Dict[str, Any] = user_service.build_claims(user, scopes)
        claims.update({
            "iss": settings.OAUTH_ISSUER,
            "aud": client.client_id,
            "iat": now,
            "auth_time": now,
            "exp": now + settings.ID_TOKEN_EXPIRE_MINUTES * 60,
        })
        if nonce:
            claims["nonce"] = nonce
        return self.signer.sign(claims)

    # --- refresh token records ---

    @staticmethod
    def _create_refresh_record(
        db: Session,
        *,
        user_id: int,
        client_id: int,
        family_id: str,
        scope: str,
        authorization_code_id: Optional[int] = None,
        rotated_from_id: Optional[int] = None,
    ) -> str:
        value = generate_token(32)
        record = RefreshToken(
            token_hash=hash_token(value),
            family_id=family_id,
            user_id=user_id,
            client_id=client_id,
            authorization_code_id=authorization_code_id,
            rotated_from_id=rotated_from_id,
            scope=scope,
            expires_at=utcnow() + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
            revoked=False,
        )
        db.add(record)
        db.flush()
        return value

    def issue_for_authorization_code(
        self,
        db: Session,
        *,
        client: OAuthClient,
        user: User,
        scopes: List[str],
        authorization_code_id: int,
        nonce: Optional[str] = None,
    ) -> IssuedTokens:
        """
        Start a new token family for a redeemed code. Flushes the refresh
        record but leaves the commit to the caller.

        The refresh token is only handed out to clients allowed the
        refresh_token grant; for the others the record just anchors the
        family so its access tokens can still be revoked.
        """
        self.signer.sync(db)
        family_id = secrets.token_urlsafe(32)
        refresh_token = self._create_refresh_record(
            db,
            user_id=user.id,
            client_id=client.id,
            family_id=family_id,
            scope=format_scope(scopes),
            authorization_code_id=authorization_code_id,
        )
        access_token = self.create_access_token(user=user, client=client, scopes=scopes, family_id=family_id)
        id_token = None
        if "openid" in scopes:
            id_token = self.create_id_token(user=user, client=client, scopes=scopes, nonce=nonce)
        if "refresh_token" not in (client.allowed_grant_types or []):
            refresh_token = None
        return IssuedTokens(
            access_token=access_token,
            expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            scope=format_scope(scopes),
            refresh_token=refresh_token,
            id_token=id_token,
        )

    def issue_rotated(
        self,
        db: Session,
        *,
        client: OAuthClient,
        user: User,
        previous: RefreshToken,
        access_scopes: List[str],
    ) -> IssuedTokens:
        """
        Successor of ``previous`` in its family. The new refresh token keeps the
        original grant; the access token carries ``access_scopes``.
        """
        self.signer.sync(db)
        refresh_token = self._create_refresh_record(
            db,
            user_id=user.id,
            client_id=client.id,
            family_id=previous.family_id,
            scope=previous.scope,
            authorization_code_id=previous.authorization_code_id,
            rotated_from_id=previous.id,
        )
        access_token = self.create_access_token(
            user=user, client=client, scopes=access_scopes, family_id=previous.family_id
        )
        self._prune_family(db, previous.family_id)
        return IssuedTokens(
            access_token=access_token,
            expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            scope=format_scope(access_scopes),
            refresh_token=refresh_token,
        )

    @staticmethod
    def get_refresh_token(db: Session, value: str) -> Optional[RefreshToken]:
        return db.query(RefreshToken).filter(RefreshToken.token_hash == hash_token(value)).first()

    @staticmethod
    def is_expired(record: RefreshToken) -> bool:
        return record.expires_at <= utcnow()

    @staticmethod
    def mark_rotated(db: Session, record_id: int) -> bool:
        """
        Revoke a refresh token as part of rotation with one conditional
        UPDATE; False when a concurrent request already rotated it.
        """
        result = db.execute(
            update(RefreshToken)
            .where(RefreshToken.id == record_id, RefreshToken.revoked == False)  # noqa: E712
            .values(revoked=True, revoked_at=utcnow(), revoked_reason="rotated")
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def revoke_family(db: Session, family_id: str, reason: str) -> int:
        """Revoke every live token in a family. Not committed here."""
        result = db.execute(
            update(RefreshToken)
            .where(RefreshToken.family_id == family_id, RefreshToken.revoked == False)  # noqa: E712
            .values(revoked=True, revoked_at=utcnow(), revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    def revoke_for_authorization_code(db: Session, authorization_code_id: int, reason: str) -> int:
        """Revoke every family that descends from the given code."""
        families = [
            row[0]
            for row in db.query(RefreshToken.family_id)
            .filter(RefreshToken.authorization_code_id == authorization_code_id)
            .distinct()
            .all()
        ]
        return sum(TokenService.revoke_family(db, family_id, reason) for family_id in families)

    @staticmethod
    def is_family_active(db: Session, family_id: Optional[str]) -> bool:
        """
        A family stays active while it has an unrevoked member; access tokens
        of a fully revoked family are rejected at userinfo.
        """
        if not family_id:
            return False
        return (
            db.query(RefreshToken.id)
            .filter(RefreshToken.family_id == family_id, RefreshToken.revoked == False)  # noqa: E712
            .first()
            is not None
        )

    @staticmethod
    def _delete_records(db: Session, ids: List[int]) -> int:
        if not ids:
            return 0
        db.query(RefreshToken).filter(RefreshToken.rotated_from_id.in_(ids)).update(
            {RefreshToken.rotated_from_id: None}, synchronize_session=False
        )
        return db.query(RefreshToken).filter(RefreshToken.id.in_(ids)).delete(synchronize_session=False)

    @staticmethod
    def _prune_family(db: Session, family_id: str) -> None:
        # Keep token family bounded. Rotated-away members stay until they
        # expire so their replay is still recognised as reuse.
        family_ids = [
            row[0]
            for row in db.query(RefreshToken.id)
            .filter(RefreshToken.family_id == family_id)
            .order_by(RefreshToken.created_at.desc(), RefreshToken.id.desc())
            .all()
        ]
        beyond_cap = family_ids[settings.MAX_REFRESH_TOKEN_FAMILY_SIZE:]
        if beyond_cap:
            stale = [
                row[0]
                for row in db.query(RefreshToken.id)
                .filter(RefreshToken.id.in_(beyond_cap), RefreshToken.expires_at <= utcnow())
                .all()
            ]
            TokenService._delete_records(db, stale)

    @staticmethod
    def purge_expired(db: Session) -> int:
        """
        Delete refresh tokens of families whose every member has expired.
        Expired members of a family that still has a live token are kept,
        since replaying them must revoke that live token.
        """
        cutoff = utcnow()
        live_families = select(RefreshToken.family_id).where(RefreshToken.expires_at > cutoff)
        expired = [
            row[0]
            for row in db.query(RefreshToken.id)
            .filter(RefreshToken.expires_at <= cutoff, ~RefreshToken.family_id.in_(live_families))
            .all()
        ]
        deleted = TokenService._delete_records(db, expired)
        db.commit()
        return deleted


token_service = TokenService(token_signer)
