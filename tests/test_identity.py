# -*- coding: utf-8 -*-
"""Token verification against a locally generated JWKS."""

import json
import time

import pytest
from authlib.jose import JsonWebKey, jwt

from caradvisor.exceptions import IdentityNotConfiguredError, InvalidCredentialError
from caradvisor.identity import TokenVerifier, build_verifier, load_key_set

PROJECT_ID = "car-advisor-test"
ISSUER = f"https://securetoken.google.com/{PROJECT_ID}"
KID = "test-key-1"


@pytest.fixture(scope="module")
def signing_key():
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture(scope="module")
def jwks(signing_key):
    public = dict(signing_key.as_dict(is_private=False))
    public.update({"kid": KID, "alg": "RS256", "use": "sig"})
    return {"keys": [public]}


@pytest.fixture
def verifier(jwks):
    return TokenVerifier(key_set=load_key_set(jwks), project_id=PROJECT_ID)


def _token(signing_key, **overrides):
    now = int(time.time())
    claims = {
        "iss": ISSUER,
        "aud": PROJECT_ID,
        "sub": "firebase-uid-123",
        "email": "driver@example.com",
        "iat": now,
        "exp": now + 3600,
    }
    claims.update(overrides)
    claims = {k: v for k, v in claims.items() if v is not None}
    return jwt.encode({"alg": "RS256", "kid": KID}, claims, signing_key).decode("ascii")


def test_valid_token_yields_identity(verifier, signing_key):
    identity = verifier.verify(_token(signing_key))
    assert identity.uid == "firebase-uid-123"
    assert identity.email == "driver@example.com"


def test_email_is_optional(verifier, signing_key):
    identity = verifier.verify(_token(signing_key, email=None))
    assert identity.uid == "firebase-uid-123"
    assert identity.email is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"exp": int(time.time()) - 3600, "iat": int(time.time()) - 7200},
        {"aud": "another-project"},
        {"iss": "https://accounts.example.com"},
        {"sub": ""},
        {"sub": None},
    ],
    ids=["expired", "wrong-audience", "wrong-issuer", "empty-subject", "missing-subject"],
)
def test_rejected_claims(verifier, signing_key, overrides):
    with pytest.raises(InvalidCredentialError):
        verifier.verify(_token(signing_key, **overrides))


def test_token_signed_by_unknown_key_is_rejected(verifier):
    other_key = JsonWebKey.generate_key("RSA", 2048, is_private=True)
    now = int(time.time())
    forged = jwt.encode(
        {"alg": "RS256", "kid": KID},
        {"iss": ISSUER, "aud": PROJECT_ID, "sub": "attacker", "iat": now, "exp": now + 60},
        other_key,
    ).decode("ascii")
    with pytest.raises(InvalidCredentialError):
        verifier.verify(forged)


@pytest.mark.parametrize("garbage", ["", "not-a-jwt", "a.b.c"])
def test_garbage_is_rejected(verifier, garbage):
    with pytest.raises(InvalidCredentialError):
        verifier.verify(garbage)


def test_unconfigured_verifier_fails_closed(signing_key):
    with pytest.raises(IdentityNotConfiguredError):
        TokenVerifier().verify(_token(signing_key))


def test_build_verifier_from_inline_jwks(jwks, signing_key):
    verifier = build_verifier({"IDENTITY_PROJECT_ID": PROJECT_ID, "IDENTITY_JWKS_JSON": json.dumps(jwks)})
    assert verifier.configured
    assert verifier.issuer == ISSUER
    assert verifier.verify(_token(signing_key)).uid == "firebase-uid-123"


def test_build_verifier_from_file(tmp_path, jwks, signing_key):
    path = tmp_path / "jwks.json"
    path.write_text(json.dumps(jwks), encoding="utf-8")
    verifier = build_verifier({"IDENTITY_PROJECT_ID": PROJECT_ID, "IDENTITY_JWKS_PATH": str(path)})
    assert verifier.verify(_token(signing_key)).uid == "firebase-uid-123"


@pytest.mark.parametrize(
    "config",
    [
        {},
        {"IDENTITY_PROJECT_ID": PROJECT_ID},
        {"IDENTITY_PROJECT_ID": PROJECT_ID, "IDENTITY_JWKS_JSON": "{not json"},
        {"IDENTITY_PROJECT_ID": PROJECT_ID, "IDENTITY_JWKS_PATH": "/nonexistent/jwks.json"},
    ],
    ids=["empty", "no-keys", "bad-json", "missing-file"],
)
def test_build_verifier_without_trust_root_is_unconfigured(config):
    verifier = build_verifier(config)
    assert verifier.configured is False
    with pytest.raises(IdentityNotConfiguredError):
        verifier.verify("anything")
