from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from authserver.config import settings
from authserver.core import pkce
from authserver.core.database import Base, utcnow
from authserver.core.exceptions import (
    AuthorizationRedirectError,
    InvalidRequestError,
    UnsupportedResponseTypeError,
)
from authserver.models.audit import AuditEvent
from authserver.models.authorization import AuthorizationCode, Consent, PendingAuthorization
from authserver.models.user import User
from authserver.schemas.client import ClientCreate
from authserver.services.authorization_service import (
    AuthorizationRequest,
    authorization_service,
    build_redirect_url,
)
from authserver.services.client_service import client_registry

REDIRECT = "http://localhost:3000/callback"
VERIFIER = "v" * 64


def _make_session():
    engine = create_engine("sqlite:///:memory:")
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    return SessionLocal()


def _seed(db, *, first_party=False):
    user = User(username="alice", name="Alice", email="alice@example.com", role="user", is_active=True)
    other = User(username="mallory", name="Mallory", role="user", is_active=True)
    db.add_all([user, other])
    db.commit()
    client, _ = client_registry.create_client(
        db,
        ClientCreate(
            client_id="public_test_client_001",
            name="Test SPA",
            description="Test application",
            redirect_uris=[REDIRECT, "https://app.example.com/cb?tenant=acme"],
            confidential=False,
            pkce_required=True,
            is_first_party=first_party,
        ),
    )
    return user, other, client


def _request(**overrides):
    data = {
        "client_id": "public_test_client_001",
        "redirect_uri": REDIRECT,
        "response_type": "code",
        "scope": "openid profile email",
        "state": "xyz-123",
        "nonce": "n-0S6",
        "code_challenge": pkce.compute_challenge(VERIFIER),
        "code_challenge_method": "S256",
    }
    data.update(overrides)
    return AuthorizationRequest(**data)


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def test_first_party_request_issues_single_code_with_short_expiry():
    db = _make_session()
    try:
        user, _, client = _seed(db, first_party=True)
        before = utcnow()

        location = authorization_service.authorize(db, _request(), user, "/oauth/authorize?x=1")

        assert location.startswith(REDIRECT + "?")
        params = _query(location)
        assert params["state"] == "xyz-123"
        assert params["code"]

        codes = db.query(AuthorizationCode).all()
        assert len(codes) == 1
        code = codes[0]
        assert code.consumed is False
        assert code.client_id == client.id
        assert code.user_id == user.id
        assert code.scope == "email openid profile"
        assert code.nonce == "n-0S6"
        assert code.code_challenge_method == "S256"
        ttl = (code.expires_at - before).total_seconds()
        assert settings.AUTHORIZATION_CODE_TTL_SECONDS - 2 <= ttl <= settings.AUTHORIZATION_CODE_TTL_SECONDS + 2
    finally:
        db.close()


def test_absent_state_stays_absent():
    db = _make_session()
    try:
        user, _, _ = _seed(db, first_party=True)
        location = authorization_service.authorize(db, _request(state=None), user, "/oauth/authorize")
        assert "state" not in _query(location)
    finally:
        db.close()


def test_existing_redirect_query_is_preserved():
    assert build_redirect_url("https://app.example.com/cb?tenant=acme", code="abc", state=None) == (
        "https://app.example.com/cb?tenant=acme&code=abc"
    )


def test_anonymous_user_is_sent_to_login_with_original_request():
    db = _make_session()
    try:
        _seed(db)
        return_to = "/oauth/authorize?client_id=public_test_client_001&state=xyz-123"
        location = authorization_service.authorize(db, _request(), None, return_to)

        assert location.startswith(settings.OAUTH_LOGIN_URL + "?")
        assert _query(location)["return_to"] == return_to
        assert db.query(AuthorizationCode).count() == 0
    finally:
        db.close()


@pytest.mark.parametrize(
    "overrides",
    [
        {"client_id": "unknown"},
        {"redirect_uri": REDIRECT + "/"},
        {"redirect_uri": "https://evil.example.com/cb"},
        {"code_challenge": None, "code_challenge_method": None},
        {"code_challenge_method": "plain"},
        {"code_challenge_method": None},
        {"code_challenge": "not-a-valid-challenge"},
    ],
)
def test_untrusted_requests_fail_without_redirect(overrides):
    db = _make_session()
    try:
        user, _, _ = _seed(db)
        with pytest.raises(InvalidRequestError) as exc_info:
            authorization_service.authorize(db, _request(**overrides), user, "/oauth/authorize")
        assert not isinstance(exc_info.value, AuthorizationRedirectError)
    finally:
        db.close()


def test_unsupported_response_type_is_not_redirected():
    db = _make_session()
    try:
        user, _, _ = _seed(db)
        with pytest.raises(UnsupportedResponseTypeError):
            authorization_service.authorize(db, _request(response_type="token"), user, "/oauth/authorize")
    finally:
        db.close()


def test_unknown_scope_is_redirected_with_state():
    db = _make_session()
    try:
        user, _, _ = _seed(db)
        with pytest.raises(AuthorizationRedirectError) as exc_info:
            authorization_service.authorize(db, _request(scope="openid admin"), user, "/oauth/authorize")
        assert exc_info.value.error == "invalid_scope"
        assert exc_info.value.redirect_uri == REDIRECT
        assert exc_info.value.state == "xyz-123"
    finally:
        db.close()


def test_client_without_code_grant_is_redirected_as_unauthorized():
    db = _make_session()
    try:
        user, _, client = _seed(db)
        client.allowed_grant_types = ["refresh_token"]
        db.commit()
        with pytest.raises(AuthorizationRedirectError) as exc_info:
            authorization_service.authorize(db, _request(), user, "/oauth/authorize")
        assert exc_info.value.error == "unauthorized_client"
    finally:
        db.close()


def test_third_party_request_parks_pending_authorization():
    db = _make_session()
    try:
        user, _, _ = _seed(db)
        location = authorization_service.authorize(db, _request(), user, "/oauth/authorize")

        assert location.startswith(settings.OAUTH_CONSENT_URL + "?")
        request_id = _query(location)["request_id"]
        assert db.query(AuthorizationCode).count() == 0

        pending = db.query(PendingAuthorization).one()
        assert pending.request_id_hash != request_id
        assert pending.state == "xyz-123"

        prompt = authorization_service.consent_prompt(db, request_id, user)
        assert prompt.application.client_id == "public_test_client_001"
        assert prompt.application.name == "Test SPA"
        assert [s.name for s in prompt.scopes] == ["email", "openid", "profile"]
        assert prompt.redirect_uri == REDIRECT
    finally:
        db.close()


def test_approval_records_consent_and_issues_code():
    db = _make_session()
    try:
        user, _, client = _seed(db)
        location = authorization_service.authorize(db, _request(), user, "/oauth/authorize")
        request_id = _query(location)["request_id"]

        redirect_url = authorization_service.decide(db, request_id, True, user)

        params = _query(redirect_url)
        assert redirect_url.startswith(REDIRECT)
        assert params["state"] == "xyz-123"
        assert params["code"]
        assert db.query(PendingAuthorization).count() == 0
        consent = db.query(Consent).one()
        assert consent.granted_scopes == "email openid profile"
        assert db.query(AuditEvent).filter(AuditEvent.action == "consent.granted").count() == 1

        # Covered by the stored consent: straight back to the client
        location = authorization_service.authorize(db, _request(scope="openid email"), user, "/oauth/authorize")
        assert "code" in _query(location)

        # The pending request cannot be replayed
        with pytest.raises(InvalidRequestError):
            authorization_service.decide(db, request_id, True, user)
    finally:
        db.close()


def test_consent_scopes_accumulate():
    db = _make_session()
    try:
        user, _, _ = _seed(db)
        first = _query(authorization_service.authorize(db, _request(scope="openid"), user, "/x"))["request_id"]
        authorization_service.decide(db, first, True, user)
        second = _query(authorization_service.authorize(db, _request(scope="email"), user, "/x"))["request_id"]
        authorization_service.decide(db, second, True, user)

        assert db.query(Consent).one().granted_scopes == "email openid"
    finally:
        db.close()


def test_denial_redirects_with_access_denied():
    db = _make_session()
    try:
        user, _, _ = _seed(db)
        request_id = _query(authorization_service.authorize(db, _request(), user, "/x"))["request_id"]

        params = _query(authorization_service.decide(db, request_id, False, user))

        assert params["error"] == "access_denied"
        assert params["state"] == "xyz-123"
        assert "code" not in params
        assert db.query(Consent).count() == 0
        assert db.query(AuthorizationCode).count() == 0
    finally:
        db.close()


def test_pending_request_of_another_user_or_expired_is_rejected():
    db = _make_session()
    try:
        user, other, _ = _seed(db)
        request_id = _query(authorization_service.authorize(db, _request(), user, "/x"))["request_id"]

        with pytest.raises(InvalidRequestError):
            authorization_service.consent_prompt(db, request_id, other)
        with pytest.raises(InvalidRequestError):
            authorization_service.decide(db, request_id, True, other)

        pending = db.query(PendingAuthorization).one()
        pending.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()
        with pytest.raises(InvalidRequestError):
            authorization_service.consent_prompt(db, request_id, user)
        with pytest.raises(InvalidRequestError):
            authorization_service.consent_prompt(db, "unknown", user)
    finally:
        db.close()
