"""Consent manager - persisted grants and pending authorization requests."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from authserver.config import settings
from authserver.core.database import utcnow
from authserver.core.scopes import format_scope, parse_scope
from authserver.core.security import generate_token, hash_token
from authserver.models.authorization import Consent, PendingAuthorization

logger = logging.getLogger(__name__)


class ConsentService:
    """User -> client -> scope grants."""

    @staticmethod
    def get(db: Session, user_id: int, client_id: int) -> Optional[Consent]:
        return (
            db.query(Consent)
            .filter(Consent.user_id == user_id, Consent.client_id == client_id)
            .first()
        )

    @staticmethod
    def covers(db: Session, user_id: int, client_id: int, scopes: Iterable[str]) -> bool:
        """True when an existing consent already grants every requested scope."""
        consent = ConsentService.get(db, user_id, client_id)
        if consent is None:
            return False
        return set(scopes) <= set(parse_scope(consent.granted_scopes))

    @staticmethod
    def touch(db: Session, user_id: int, client_id: int) -> None:
        consent = ConsentService.get(db, user_id, client_id)
        if consent is not None:
            consent.last_used_at = utcnow()

    @staticmethod
    def grant(db: Session, user_id: int, client_id: int, scopes: Iterable[str]) -> Consent:
        """
        Upsert the single consent record for (user, client); granted scopes
        become the union of previous and new ones. Not committed here.
        """
        now = utcnow()
        consent = ConsentService.get(db, user_id, client_id)
        if consent is None:
            consent = Consent(
                user_id=user_id,
                client_id=client_id,
                granted_scopes=format_scope(scopes),
                granted_at=now,
                last_used_at=now,
            )
            db.add(consent)
        else:
            merged = set(parse_scope(consent.granted_scopes)) | set(scopes)
            consent.granted_scopes = format_scope(merged)
            consent.granted_at = now
            consent.last_used_at = now
        db.flush()
        return consent

    # --- pending authorization requests ---

    @staticmethod
    def create_pending(
        db: Session,
        *,
        client_id: int,
        user_id: int,
        redirect_uri: str,
        scopes: Iterable[str],
        state: Optional[str],
        nonce: Optional[str],
        code_challenge: Optional[str],
        code_challenge_method: Optional[str],
    ) -> Tuple[str, PendingAuthorization]:
        """Park an authorization request awaiting consent; returns its request_id."""
        request_id = generate_token(32)
        pending = PendingAuthorization(
            request_id_hash=hash_token(request_id),
            client_id=client_id,
            user_id=user_id,
            redirect_uri=redirect_uri,
            scope=format_scope(scopes),
            state=state,
            nonce=nonce,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method if code_challenge else None,
            expires_at=utcnow() + timedelta(seconds=settings.PENDING_AUTHORIZATION_TTL_SECONDS),
        )
        db.add(pending)
        db.flush()
        return request_id, pending

    @staticmethod
    def get_pending(db: Session, request_id: str, user_id: int) -> Optional[PendingAuthorization]:
        """A live pending request owned by ``user_id``, or None."""
        pending = (
            db.query(PendingAuthorization)
            .filter(PendingAuthorization.request_id_hash == hash_token(request_id))
            .first()
        )
        if pending is None or pending.user_id != user_id:
            return None
        if pending.expires_at <= utcnow():
            return None
        return pending

    @staticmethod
    def take_pending(db: Session, pending_id: int) -> bool:
        """Delete a pending request; False if another request already took it."""
        deleted = (
            db.query(PendingAuthorization)
            .filter(PendingAuthorization.id == pending_id)
            .delete(synchronize_session=False)
        )
        return deleted == 1

    @staticmethod
    def purge_expired(db: Session) -> int:
        deleted = (
            db.query(PendingAuthorization)
            .filter(PendingAuthorization.expires_at < utcnow())
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted


consent_service = ConsentService()
