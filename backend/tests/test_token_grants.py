from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from authserver.config import settings
from authserver.core import pkce
from authserver.core.database import Base, utcnow
from authserver.core.exceptions import InvalidGrantError, InvalidScopeError
from authserver.core.security import hash_token
from authserver.models.audit import AuditEvent
from authserver.models.authorization import AuthorizationCode
from authserver.models.security import RefreshToken
from authserver.models.user import User
from authserver.schemas.client import ClientCreate
from authserver.schemas.oauth import AuthorizationCodeGrant, RefreshTokenGrant
from authserver.services.authorization_code_service import authorization_code_service
from authserver.services.client_service import client_registry
from authserver.services.grant_service import grant_service
from authserver.services.signing_service import token_signer
from authserver.services.token_service import token_service

REDIRECT = "http://localhost:3000/callback"
VERIFIER = "correct-horse-battery-staple-" + "a" * 30


def _make_session(url="sqlite:///:memory:"):
    engine = create_engine(url, connect_args={"check_same_thread": False})
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    return SessionLocal


def _seed(db):
    user = User(
        username="alice",
        name="Alice",
        email="alice@example.com",
        email_verified=True,
        company="Acme",
        role="user",
        is_active=True,
    )
    db.add(user)
    db.commit()
    public, _ = client_registry.create_client(
        db,
        ClientCreate(
            client_id="public_test_client_001",
            name="SPA",
            redirect_uris=[REDIRECT],
            confidential=False,
            pkce_required=True,
        ),
    )
    confidential, _ = client_registry.create_client(
        db,
        ClientCreate(
            client_id="backend_app",
            name="Backend",
            redirect_uris=["https://backend.example.com/cb"],
            confidential=True,
            pkce_required=False,
        ),
    )
    token_signer.load(db)
    return user, public, confidential


def _code(db, client, user, *, redirect_uri=REDIRECT, scope=("openid", "profile", "email"), verifier=VERIFIER):
    code, record = authorization_code_service.create(
        db,
        client_id=client.id,
        user_id=user.id,
        redirect_uri=redirect_uri,
        scopes=scope,
        state="s",
        nonce="nonce-1",
        code_challenge=pkce.compute_challenge(verifier) if verifier else None,
        code_challenge_method="S256" if verifier else None,
    )
    db.commit()
    return code, record.id


def _grant(code, redirect_uri=REDIRECT, verifier=VERIFIER):
    return AuthorizationCodeGrant(
        grant_type="authorization_code", code=code, redirect_uri=redirect_uri, code_verifier=verifier
    )


def test_code_exchange_issues_tokens_and_consumes_code():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        code, code_id = _code(db, public, user)

        tokens = grant_service.exchange_authorization_code(db, public, _grant(code))

        assert tokens.refresh_token
        assert tokens.scope == "email openid profile"
        assert tokens.expires_in == settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60

        access = token_signer.verify(tokens.access_token, audience="public_test_client_001")
        assert access["sub"] == str(user.id)
        assert access["typ"] == "access"
        assert access["scope"] == "email openid profile"

        id_claims = token_signer.verify(tokens.id_token, audience="public_test_client_001")
        assert id_claims["nonce"] == "nonce-1"
        assert id_claims["email"] == "alice@example.com"
        assert "roles" not in id_claims

        assert db.get(AuthorizationCode, code_id).consumed is True
        stored = db.query(RefreshToken).one()
        assert stored.token_hash == hash_token(tokens.refresh_token)
        assert stored.rotated_from_id is None
        assert stored.authorization_code_id == code_id
        assert access["fam"] == stored.family_id
    finally:
        db.close()


def test_no_id_token_without_openid_scope():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        code, _ = _code(db, public, user, scope=("profile",))
        tokens = grant_service.exchange_authorization_code(db, public, _grant(code))
        assert tokens.id_token is None
    finally:
        db.close()


def test_code_replay_fails_and_revokes_issued_family():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        code, code_id = _code(db, public, user)
        tokens = grant_service.exchange_authorization_code(db, public, _grant(code))

        with pytest.raises(InvalidGrantError):
            grant_service.exchange_authorization_code(db, public, _grant(code))

        record = token_service.get_refresh_token(db, tokens.refresh_token)
        assert record.revoked is True
        assert record.revoked_reason == "code_replay"
        assert not token_service.is_family_active(db, record.family_id)
        assert db.query(AuditEvent).filter(AuditEvent.action == "oauth.code_replay").count() == 1
    finally:
        db.close()


def test_concurrent_redemption_has_exactly_one_winner(tmp_path):
    SessionLocal = _make_session(f"sqlite:///{tmp_path / 'race.db'}")
    setup = SessionLocal()
    user, public, _ = _seed(setup)
    code, code_id = _code(setup, public, user)
    setup.close()

    first, second = SessionLocal(), SessionLocal()
    try:
        # Both requests have looked the code up before either consumes it
        assert authorization_code_service.get_by_code(first, code).consumed is False
        assert authorization_code_service.get_by_code(second, code).consumed is False

        assert authorization_code_service.consume(first, code_id) is True
        first.commit()
        assert authorization_code_service.consume(second, code_id) is False
        second.rollback()
    finally:
        first.close()
        second.close()


def test_redirect_uri_must_match_exactly():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        code, code_id = _code(db, public, user)

        with pytest.raises(InvalidGrantError):
            grant_service.exchange_authorization_code(db, public, _grant(code, redirect_uri=REDIRECT + "/"))
        assert db.get(AuthorizationCode, code_id).consumed is False
    finally:
        db.close()


def test_public_client_without_verifier_is_rejected():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        code, _ = _code(db, public, user)

        with pytest.raises(InvalidGrantError):
            grant_service.exchange_authorization_code(db, public, _grant(code, verifier=None))
        with pytest.raises(InvalidGrantError):
            grant_service.exchange_authorization_code(db, public, _grant(code, verifier="b" * 50))
    finally:
        db.close()


def test_public_client_code_without_challenge_is_rejected():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        code, _ = _code(db, public, user, verifier=None)
        with pytest.raises(InvalidGrantError):
            grant_service.exchange_authorization_code(db, public, _grant(code))
    finally:
        db.close()


def test_confidential_client_without_pkce_succeeds():
    db = _make_session()()
    try:
        user, _, confidential = _seed(db)
        code, _ = _code(db, confidential, user, redirect_uri="https://backend.example.com/cb", verifier=None)
        grant = _grant(code, redirect_uri="https://backend.example.com/cb", verifier=None)
        assert grant_service.exchange_authorization_code(db, confidential, grant).access_token
    finally:
        db.close()


def test_code_bound_to_another_client_is_rejected():
    db = _make_session()()
    try:
        user, public, confidential = _seed(db)
        code, _ = _code(db, public, user)
        with pytest.raises(InvalidGrantError):
            grant_service.exchange_authorization_code(db, confidential, _grant(code))
    finally:
        db.close()


def test_expired_code_is_rejected():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        code, code_id = _code(db, public, user)
        record = db.get(AuthorizationCode, code_id)
        record.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()

        with pytest.raises(InvalidGrantError):
            grant_service.exchange_authorization_code(db, public, _grant(code))
        with pytest.raises(InvalidGrantError):
            grant_service.exchange_authorization_code(db, public, _grant("no-such-code"))
    finally:
        db.close()


def _issue(db, public, user, scope=("openid", "profile", "email")):
    code, _ = _code(db, public, user, scope=scope)
    return grant_service.exchange_authorization_code(db, public, _grant(code))


def _refresh(value, scope=None):
    return RefreshTokenGrant(grant_type="refresh_token", refresh_token=value, scope=scope)


def test_refresh_rotates_token_within_family():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        first = _issue(db, public, user)

        second = grant_service.exchange_refresh_token(db, public, _refresh(first.refresh_token))

        assert second.refresh_token != first.refresh_token
        assert second.id_token is None
        old = token_service.get_refresh_token(db, first.refresh_token)
        new = token_service.get_refresh_token(db, second.refresh_token)
        assert old.revoked is True
        assert old.revoked_reason == "rotated"
        assert new.revoked is False
        assert new.rotated_from_id == old.id
        assert new.family_id == old.family_id
        assert token_signer.verify(second.access_token)["fam"] == old.family_id
    finally:
        db.close()


def test_refresh_token_reuse_revokes_whole_family():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        first = _issue(db, public, user)
        second = grant_service.exchange_refresh_token(db, public, _refresh(first.refresh_token))

        with pytest.raises(InvalidGrantError):
            grant_service.exchange_refresh_token(db, public, _refresh(first.refresh_token))

        newest = token_service.get_refresh_token(db, second.refresh_token)
        assert newest.revoked is True
        assert newest.revoked_reason == "reuse_detected"
        with pytest.raises(InvalidGrantError):
            grant_service.exchange_refresh_token(db, public, _refresh(second.refresh_token))
        assert db.query(AuditEvent).filter(AuditEvent.action == "oauth.refresh_token_reuse").count() >= 1
    finally:
        db.close()


def test_refresh_scope_may_narrow_but_not_widen():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        first = _issue(db, public, user, scope=("openid", "profile"))

        with pytest.raises(InvalidScopeError):
            grant_service.exchange_refresh_token(db, public, _refresh(first.refresh_token, scope="openid email"))

        narrowed = grant_service.exchange_refresh_token(db, public, _refresh(first.refresh_token, scope="openid"))
        assert narrowed.scope == "openid"
        assert token_signer.verify(narrowed.access_token)["scope"] == "openid"
        assert token_service.get_refresh_token(db, narrowed.refresh_token).scope == "openid profile"
    finally:
        db.close()


def test_refresh_by_another_client_or_after_expiry_is_rejected():
    db = _make_session()()
    try:
        user, public, confidential = _seed(db)
        first = _issue(db, public, user)

        with pytest.raises(InvalidGrantError):
            grant_service.exchange_refresh_token(db, confidential, _refresh(first.refresh_token))

        record = token_service.get_refresh_token(db, first.refresh_token)
        record.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()
        with pytest.raises(InvalidGrantError):
            grant_service.exchange_refresh_token(db, public, _refresh(first.refresh_token))
        with pytest.raises(InvalidGrantError):
            grant_service.exchange_refresh_token(db, public, _refresh("unknown"))
    finally:
        db.close()


def test_rotation_race_loser_gets_no_new_token():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        first = _issue(db, public, user)
        record = token_service.get_refresh_token(db, first.refresh_token)

        assert token_service.mark_rotated(db, record.id) is True
        assert token_service.mark_rotated(db, record.id) is False
        db.rollback()
    finally:
        db.close()


def test_reuse_of_expired_rotated_token_still_revokes_family():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        stolen = _issue(db, public, user)
        newest = grant_service.exchange_refresh_token(db, public, _refresh(stolen.refresh_token))

        old = token_service.get_refresh_token(db, stolen.refresh_token)
        old.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()

        with pytest.raises(InvalidGrantError):
            grant_service.exchange_refresh_token(db, public, _refresh(stolen.refresh_token))

        live = token_service.get_refresh_token(db, newest.refresh_token)
        assert live.revoked is True
        assert live.revoked_reason == "reuse_detected"
        assert db.query(AuditEvent).filter(AuditEvent.action == "oauth.refresh_token_reuse").count() == 1
    finally:
        db.close()


def test_client_without_refresh_grant_gets_no_refresh_token():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        public.allowed_grant_types = ["authorization_code"]
        db.commit()

        tokens = _issue(db, public, user)

        assert tokens.refresh_token is None
        assert tokens.access_token
        family_id = token_signer.verify(tokens.access_token)["fam"]
        assert token_service.is_family_active(db, family_id)
    finally:
        db.close()


def test_old_family_members_stay_detectable_until_expired(monkeypatch):
    db = _make_session()()
    try:
        monkeypatch.setattr(settings, "MAX_REFRESH_TOKEN_FAMILY_SIZE", 3)
        user, public, _ = _seed(db)
        first = _issue(db, public, user)
        current = first
        for _ in range(5):
            current = grant_service.exchange_refresh_token(db, public, _refresh(current.refresh_token))

        family_id = token_service.get_refresh_token(db, current.refresh_token).family_id
        assert db.query(RefreshToken).filter(RefreshToken.family_id == family_id).count() == 6

        with pytest.raises(InvalidGrantError):
            grant_service.exchange_refresh_token(db, public, _refresh(first.refresh_token))
        assert token_service.get_refresh_token(db, current.refresh_token).revoked_reason == "reuse_detected"
    finally:
        db.close()


def test_family_is_pruned_of_expired_members_beyond_cap(monkeypatch):
    db = _make_session()()
    try:
        monkeypatch.setattr(settings, "MAX_REFRESH_TOKEN_FAMILY_SIZE", 3)
        user, public, _ = _seed(db)
        current = _issue(db, public, user)
        for _ in range(4):
            current = grant_service.exchange_refresh_token(db, public, _refresh(current.refresh_token))

        family_id = token_service.get_refresh_token(db, current.refresh_token).family_id
        for record in db.query(RefreshToken).filter(
            RefreshToken.family_id == family_id, RefreshToken.revoked == True  # noqa: E712
        ):
            record.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()

        current = grant_service.exchange_refresh_token(db, public, _refresh(current.refresh_token))
        assert db.query(RefreshToken).filter(RefreshToken.family_id == family_id).count() == 3
    finally:
        db.close()


def test_purge_expired_removes_stale_records():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        code, code_id = _code(db, public, user)
        tokens = _issue(db, public, user)

        record = db.get(AuthorizationCode, code_id)
        record.expires_at = utcnow() - timedelta(seconds=settings.CODE_RETENTION_SECONDS + 1)
        refresh = token_service.get_refresh_token(db, tokens.refresh_token)
        refresh.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()

        assert authorization_code_service.purge_expired(db) == 1
        assert token_service.purge_expired(db) == 1
        assert authorization_code_service.get_by_code(db, code) is None
        assert db.query(AuthorizationCode).count() == 1
    finally:
        db.close()


def test_purge_keeps_expired_members_of_a_live_family():
    db = _make_session()()
    try:
        user, public, _ = _seed(db)
        first = _issue(db, public, user)
        second = grant_service.exchange_refresh_token(db, public, _refresh(first.refresh_token))

        old = token_service.get_refresh_token(db, first.refresh_token)
        old.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()
        assert token_service.purge_expired(db) == 0
        assert token_service.get_refresh_token(db, first.refresh_token) is not None

        newest = token_service.get_refresh_token(db, second.refresh_token)
        newest.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()
        assert token_service.purge_expired(db) == 2
        assert db.query(RefreshToken).count() == 0
    finally:
        db.close()
