from datetime import timedelta

import pytest
from jose import jwt

import config
from errors import Forbidden, Unauthorized
from models import UserModel
from schemas import Role
from security import (
    authorize,
    create_access_token,
    decode_access_token,
    ensure_owner_or_admin,
    extract_token,
    generate_reset_token,
    hash_reset_token,
    is_admin,
    is_owner_or_admin,
)


def _user(user_id=1, role=Role.MEMBER):
    return UserModel(id=user_id, name="Test", surname="User", email=f"u{user_id}@example.com", role=role)


def test_token_carries_minimal_claims():
    token = create_access_token(_user(5, Role.ADMIN))
    claims = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    assert set(claims) == {"sub", "role", "iat", "exp"}
    assert claims["sub"] == "5"
    assert claims["role"] == "admin"
    assert claims["exp"] - claims["iat"] == config.ACCESS_TOKEN_EXPIRE_MINUTES * 60


def test_expired_or_forged_token_is_unauthorized():
    expired = create_access_token(_user(), expires_delta=timedelta(seconds=-30))
    with pytest.raises(Unauthorized):
        decode_access_token(expired)

    forged = jwt.encode({"sub": "1", "role": "admin"}, "another-secret", algorithm=config.ALGORITHM)
    with pytest.raises(Unauthorized):
        decode_access_token(forged)


def test_header_token_wins_over_cookie():
    assert extract_token("from-header", "from-cookie") == "from-header"
    assert extract_token(None, "from-cookie") == "from-cookie"
    assert extract_token(None, None) is None


def test_reset_tokens_are_stored_hashed():
    token, digest = generate_reset_token()
    assert len(token) == 40
    assert digest != token
    assert hash_reset_token(token) == digest


@pytest.mark.parametrize(
    "role,expected",
    [(Role.MEMBER, False), (Role.ADMIN, True), (Role.SUPER_ADMIN, True)],
)
def test_admin_roles(role, expected):
    assert is_admin(_user(role=role)) is expected


def test_ownership_policy():
    owner = _user(1)
    other = _user(2)
    admin = _user(3, Role.ADMIN)

    assert is_owner_or_admin(owner, 1)
    assert not is_owner_or_admin(other, 1)
    assert is_owner_or_admin(admin, 1)
    assert not is_owner_or_admin(other, None)

    ensure_owner_or_admin(owner, 1, "nope")
    with pytest.raises(Forbidden) as exc:
        ensure_owner_or_admin(other, 1, "nope")
    assert exc.value.message == "nope"
    assert exc.value.status_code == 403


def test_authorize_lists_rejected_role():
    authorize(_user(role=Role.ADMIN), [Role.ADMIN])
    with pytest.raises(Forbidden) as exc:
        authorize(_user(role=Role.MEMBER), [Role.ADMIN, Role.SUPER_ADMIN])
    assert str(exc.value) == "Role member is not allowed to access this route"
