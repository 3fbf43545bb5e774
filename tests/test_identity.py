from __future__ import annotations

from datetime import timedelta

import pytest

from facility_messaging.core.errors import AccessError
from facility_messaging.services.identity import (
    JwtIdentityProvider,
    StaticIdentityProvider,
    issue_token,
)

SECRET = "test-secret"


def test_static_provider_returns_its_subject():
    assert StaticIdentityProvider("auth-x").current_auth_id() == "auth-x"
    assert StaticIdentityProvider(None).current_auth_id() is None


def test_jwt_provider_reads_subject():
    token = issue_token("auth-x", secret=SECRET, algorithm="HS256")

    provider = JwtIdentityProvider(token, secret=SECRET, algorithm="HS256")

    assert provider.current_auth_id() == "auth-x"


def test_jwt_provider_checks_audience_when_configured():
    token = issue_token("auth-x", secret=SECRET, extra_claims={"aud": "messenger"})

    assert JwtIdentityProvider(token, secret=SECRET, audience="messenger").current_auth_id() == "auth-x"
    with pytest.raises(AccessError):
        JwtIdentityProvider(token, secret=SECRET, audience="billing").current_auth_id()


def test_jwt_provider_rejects_bad_signature_and_expired_tokens():
    forged = issue_token("auth-x", secret="other-secret")
    expired = issue_token("auth-x", secret=SECRET, expires_in=timedelta(seconds=-30))

    with pytest.raises(AccessError):
        JwtIdentityProvider(forged, secret=SECRET).current_auth_id()
    with pytest.raises(AccessError):
        JwtIdentityProvider(expired, secret=SECRET).current_auth_id()
