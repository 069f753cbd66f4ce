"""API test fixtures: API users with bearer tokens against the wired app."""

import pytest

from auth.hashing import TokenHasher
from auth.tokens import AccessTokenIssuer


@pytest.fixture
def issuer(auth_db, app_key):
    return AccessTokenIssuer(auth_db, TokenHasher(app_key))


@pytest.fixture
def api_token(issuer, api_user):
    """(raw bearer token, token record) for api_user."""
    return issuer.issue(api_user, "primary")


@pytest.fixture
def auth_headers(api_token):
    raw, _ = api_token
    return {"Authorization": f"Bearer {raw}"}
