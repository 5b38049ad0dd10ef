"""Shared fixtures: an RSA signing key, its JWKS document, and ID token factory."""

import json
import time

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

AUDIENCE = "test-client.apps.googleusercontent.com"
ISSUER = "https://accounts.google.com"
OWNER_EMAIL = "owner@example.com"


def make_jwk(private_key, kid: str) -> dict:
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return jwk


@pytest.fixture(scope="session")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwks(signing_key):
    return {"keys": [make_jwk(signing_key, "key-1")]}


@pytest.fixture
def make_token(signing_key):
    def _make(kid: str = "key-1", key=None, **overrides) -> str:
        now = int(time.time())
        claims = {
            "iss": ISSUER,
            "aud": AUDIENCE,
            "sub": "1234567890",
            "email": "Owner@Example.com",
            "email_verified": True,
            "iat": now,
            "exp": now + 300,
        }
        claims.update(overrides)
        return jwt.encode(claims, key or signing_key, algorithm="RS256", headers={"kid": kid})

    return _make
