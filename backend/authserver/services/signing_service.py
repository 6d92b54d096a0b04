"""RS256 token signer with key rotation and JWKS publication."""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from authserver.config import settings
from authserver.core.database import utcnow
from authserver.core.exceptions import SigningKeyUnavailableError, TokenExpiredError, TokenInvalidError
from authserver.models.security import SigningKey

logger = logging.getLogger(__name__)

ALGORITHM = "RS256"


@dataclass
class KeyPair:
    """In-memory view of a signing key; private material never leaves the signer."""

    kid: str
    private_pem: str
    created_at: datetime
    active: bool
    public_pem: str = field(init=False)

    def __post_init__(self) -> None:
        private_key = serialization.load_pem_private_key(self.private_pem.encode("ascii"), password=None)
        self.public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    def public_jwk(self) -> Dict[str, Any]:
        data = jwk.construct(self.public_pem, ALGORITHM).to_dict()
        data.update({"kid": self.kid, "use": "sig", "alg": ALGORITHM})
        return data


def generate_private_key_pem(key_size: int) -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def _generate_kid() -> str:
    return f"key_{utcnow():%Y%m%d%H%M%S}_{secrets.token_hex(4)}"


class TokenSigner:
    """
    Owns the signing keys and is the only component that produces signatures.

    The database is the source of truth shared by every worker process: the
    in-memory key set is re-read every SIGNING_KEY_REFRESH_SECONDS (see
    ``sync``) and whenever a token names an unknown `kid`. Rotation creates a
    new active key and keeps retired keys available for verification (and in
    the JWKS) until every token they could have signed has expired. At most
    one key is active; a unique partial index enforces it across workers.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keys: Dict[str, KeyPair] = {}
        self._active_kid: Optional[str] = None
        self._loaded_at = 0.0

    # --- lifecycle ---

    def is_loaded(self) -> bool:
        return self._active_kid is not None

    @property
    def active_kid(self) -> Optional[str]:
        return self._active_kid

    def load(self, db: Session) -> str:
        """
        Load keys from the database, generating or rotating the active key
        when needed. Returns the active kid.
        """
        active = db.query(SigningKey).filter(SigningKey.is_active == True).first()  # noqa: E712
        if active is None:
            logger.info("No active signing key found, generating one")
            return self.rotate(db)

        age = utcnow() - active.created_at
        if age > timedelta(days=settings.SIGNING_KEY_ROTATION_DAYS):
            logger.info("Active signing key %s is %s old, rotating", active.kid, age)
            return self.rotate(db)

        return self.refresh(db)

    def refresh(self, db: Session) -> Optional[str]:
        """Re-read the retained keys written by any worker. Returns the active kid."""
        retained = self._retained_keys(db)
        if any(record.is_active for record in retained):
            self._install(retained)
        else:
            logger.warning("No active signing key in the database, keeping the cached key set")
        return self._active_kid

    def sync(self, db: Session) -> None:
        """Refresh the cached key set once it is older than SIGNING_KEY_REFRESH_SECONDS."""
        if time.monotonic() - self._loaded_at >= settings.SIGNING_KEY_REFRESH_SECONDS:
            self.refresh(db)

    def rotate(self, db: Session) -> str:
        """
        Create a new active key and retire the current one.

        When another worker activates a key concurrently, the unique index
        rejects this one and the winner's key set is loaded instead.
        """
        now = utcnow()
        try:
            self._retire_active(db, now)
            record = SigningKey(
                kid=_generate_kid(),
                private_key_pem=generate_private_key_pem(settings.SIGNING_KEY_SIZE),
                is_active=True,
                created_at=now,
            )
            db.add(record)
            db.flush()

            retained = self._retained_keys(db)
            retained_ids = {key.id for key in retained}
            for stale in db.query(SigningKey).all():
                if stale.id not in retained_ids:
                    db.delete(stale)
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Another worker activated a signing key concurrently, reloading")
            return self.refresh(db)

        self._install(retained)
        logger.info("Rotated signing keys. New active key: %s", record.kid)
        return record.kid

    @staticmethod
    def _retire_active(db: Session, now: datetime) -> None:
        for record in db.query(SigningKey).filter(SigningKey.is_active == True).all():  # noqa: E712
            record.is_active = False
            record.retired_at = now
        # Retirement must reach the database before the new active row.
        db.flush()

    def _retained_keys(self, db: Session) -> List[SigningKey]:
        """
        Active key plus retired keys whose tokens may still be outstanding,
        newest first, capped at SIGNING_KEY_MAX_RETAINED.
        """
        longest_ttl = timedelta(
            minutes=max(settings.ACCESS_TOKEN_EXPIRE_MINUTES, settings.ID_TOKEN_EXPIRE_MINUTES)
        )
        cutoff = utcnow() - longest_ttl
        records = db.query(SigningKey).order_by(SigningKey.created_at.desc()).all()
        retained = [
            r for r in records
            if r.is_active or (r.retired_at is not None and r.retired_at > cutoff)
        ]
        return retained[: max(1, settings.SIGNING_KEY_MAX_RETAINED)]

    def _install(self, records: List[SigningKey]) -> None:
        keys = {
            r.kid: KeyPair(kid=r.kid, private_pem=r.private_key_pem, created_at=r.created_at, active=r.is_active)
            for r in records
        }
        active = next((k.kid for k in keys.values() if k.active), None)
        with self._lock:
            self._keys = keys
            self._active_kid = active
            self._loaded_at = time.monotonic()

    # --- signing ---

    def sign(self, claims: Dict[str, Any]) -> str:
        """Sign claims with the active key; the header carries its `kid`."""
        with self._lock:
            key = self._keys.get(self._active_kid) if self._active_kid else None
        if key is None:
            raise SigningKeyUnavailableError()
        return jwt.encode(claims, key.private_pem, algorithm=ALGORITHM, headers={"kid": key.kid})

    def verify(
        self,
        token: str,
        audience: Optional[str] = None,
        db: Optional[Session] = None,
    ) -> Dict[str, Any]:
        """
        Verify signature, `kid`, `alg`, `iss` and `exp` (and `aud` when an
        audience is given). With a session, an unknown `kid` triggers a
        reload first, since another worker may have rotated.

        Raises:
            TokenExpiredError: Token is past its `exp`
            TokenInvalidError: Anything else
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError:
            raise TokenInvalidError("Malformed token")

        if header.get("alg") != ALGORITHM:
            raise TokenInvalidError("Unsupported signing algorithm")

        kid = header.get("kid") or ""
        key = self._key(kid)
        if key is None and db is not None:
            self.refresh(db)
            key = self._key(kid)
        if key is None:
            raise TokenInvalidError("Unknown signing key")

        try:
            return jwt.decode(
                token,
                key.public_pem,
                algorithms=[ALGORITHM],
                audience=audience,
                issuer=settings.OAUTH_ISSUER,
                options={"verify_aud": audience is not None},
            )
        except ExpiredSignatureError:
            raise TokenExpiredError()
        except JWTError:
            raise TokenInvalidError()

    def _key(self, kid: str) -> Optional[KeyPair]:
        with self._lock:
            return self._keys.get(kid)

    def jwks(self) -> Dict[str, List[Dict[str, Any]]]:
        """Public key set; active key first."""
        with self._lock:
            keys = sorted(self._keys.values(), key=lambda k: (not k.active, -k.created_at.timestamp()))
        return {"keys": [k.public_jwk() for k in keys]}

    def published_kids(self) -> List[str]:
        return [k["kid"] for k in self.jwks()["keys"]]


token_signer = TokenSigner()
