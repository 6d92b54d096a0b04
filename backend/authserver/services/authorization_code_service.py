"""Authorization code store - short-lived, single-use codes."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Iterable, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from authserver.config import settings
from authserver.core.database import utcnow
from authserver.core.metrics import AUTHORIZATION_CODES_ISSUED
from authserver.core.scopes import format_scope
from authserver.core.security import generate_token, hash_token
from authserver.models.authorization import AuthorizationCode

logger = logging.getLogger(__name__)


class AuthorizationCodeService:
    """Mint, look up and consume authorization codes."""

    @staticmethod
    def create(
        db: Session,
        *,
        client_id: int,
        user_id: int,
        redirect_uri: str,
        scopes: Iterable[str],
        state: Optional[str] = None,
        nonce: Optional[str] = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ) -> Tuple[str, AuthorizationCode]:
        """
        Mint a new code. Returns the plaintext code (only its hash is stored)
        together with the flushed record; the caller commits.
        """
        code = generate_token(32)
        record = AuthorizationCode(
            code_hash=hash_token(code),
            client_id=client_id,
            user_id=user_id,
            redirect_uri=redirect_uri,
            scope=format_scope(scopes),
            state=state,
            nonce=nonce,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method if code_challenge else None,
            expires_at=utcnow() + timedelta(seconds=settings.AUTHORIZATION_CODE_TTL_SECONDS),
            consumed=False,
        )
        db.add(record)
        db.flush()
        AUTHORIZATION_CODES_ISSUED.inc()
        return code, record

    @staticmethod
    def get_by_code(db: Session, code: str) -> Optional[AuthorizationCode]:
        return db.query(AuthorizationCode).filter(AuthorizationCode.code_hash == hash_token(code)).first()

    @staticmethod
    def is_expired(record: AuthorizationCode) -> bool:
        return record.expires_at <= utcnow()

    @staticmethod
    def consume(db: Session, record_id: int) -> bool:
        """
        Mark a code consumed with a single conditional UPDATE.

        Returns True only for the one caller whose update flipped
        ``consumed`` from false to true before expiry; a concurrent request
        for the same code sees zero affected rows. Not committed here.
        """
        now = utcnow()
        result = db.execute(
            update(AuthorizationCode)
            .where(
                AuthorizationCode.id == record_id,
                AuthorizationCode.consumed == False,  # noqa: E712
                AuthorizationCode.expires_at > now,
            )
            .values(consumed=True, consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def purge_expired(db: Session) -> int:
        """
        Delete codes past expiry plus the retention window. Consumed codes are
        kept that long so a late replay is still recognised.
        """
        cutoff = utcnow() - timedelta(seconds=settings.CODE_RETENTION_SECONDS)
        deleted = (
            db.query(AuthorizationCode)
            .filter(AuthorizationCode.expires_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted


authorization_code_service = AuthorizationCodeService()
