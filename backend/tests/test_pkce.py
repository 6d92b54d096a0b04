from authserver.core import pkce

# RFC 7636 appendix B
VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_compute_challenge_matches_rfc_vector():
    assert pkce.compute_challenge(VERIFIER) == CHALLENGE


def test_verify_accepts_matching_verifier():
    assert pkce.verify(VERIFIER, CHALLENGE, "S256") is True


def test_verify_rejects_wrong_verifier():
    other = "x" * 43
    assert pkce.verify(other, CHALLENGE, "S256") is False


def test_verify_rejects_plain_method_even_if_values_match():
    assert pkce.verify(VERIFIER, VERIFIER, "plain") is False


def test_verify_rejects_missing_or_malformed_verifier():
    assert pkce.verify(None, CHALLENGE, "S256") is False
    assert pkce.verify("too-short", pkce.compute_challenge("too-short"), "S256") is False
    bad_chars = "a" * 42 + "!"
    assert pkce.verify(bad_chars, pkce.compute_challenge(bad_chars), "S256") is False


def test_challenge_syntax():
    assert pkce.is_valid_challenge(CHALLENGE) is True
    assert pkce.is_valid_challenge(CHALLENGE + "=") is False
    assert pkce.is_valid_challenge("short") is False
    assert pkce.is_valid_challenge(None) is False


def test_only_s256_is_supported():
    assert pkce.is_supported_method("S256") is True
    assert pkce.is_supported_method("plain") is False
    assert pkce.is_supported_method(None) is False
