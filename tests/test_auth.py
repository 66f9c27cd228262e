"""Tests for bearer token verification and role checks."""

import uuid

import pytest

from conftest import JWT_SECRET, create_user, make_token
from ismart_edge.core.auth import SERVICE_ROLE, TokenVerifier, require_admin, require_user
from ismart_edge.core.errors import AuthenticationError, PermissionDeniedError


@pytest.fixture
def verifier():
    return TokenVerifier(JWT_SECRET)


def test_valid_user_token(verifier):
    user_id = uuid.uuid4()

    user = verifier.verify(f"Bearer {make_token(user_id)}")

    assert user.id == user_id
    assert user.is_service_role is False
    assert require_user(user) == user_id


def test_service_role_token(verifier):
    user = verifier.verify(f"Bearer {make_token(role=SERVICE_ROLE, audience=None)}")

    assert user.id is None
    assert user.is_service_role is True
    require_admin(user)
    with pytest.raises(PermissionDeniedError):
        require_user(user)


@pytest.mark.parametrize("header", [
    None,
    "",
    "Bearer ",
    "Bearer not-a-jwt",
    f"Bearer {make_token(uuid.uuid4(), secret='another-secret-of-sufficient-length-xx')}",
    f"Bearer {make_token(uuid.uuid4(), expires_in=-60)}",
    f"Bearer {make_token(uuid.uuid4(), audience='anon')}",
    f"Bearer {make_token(None)}",
])
def test_rejected_tokens(verifier, header):
    with pytest.raises(AuthenticationError) as exc_info:
        verifier.verify(header)
    assert exc_info.value.status_code == 401
    assert exc_info.value.message == "Unauthorized"


def test_empty_secret_rejected():
    with pytest.raises(ValueError):
        TokenVerifier("")


def test_require_admin_checks_role_table(database, verifier):
    admin_id = create_user("root", admin=True)
    user_id = create_user("bob")

    require_admin(verifier.verify(f"Bearer {make_token(admin_id)}"))
    with pytest.raises(PermissionDeniedError, match="Admin access required"):
        require_admin(verifier.verify(f"Bearer {make_token(user_id)}"))
