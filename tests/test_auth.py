from jose import JWTError
import pytest

from authentication.models import User
from authentication.security import create_access_token, decode_token, hash_password, verify_password
from authentication.seed import ensure_user


def test_password_hashing():
    hashed = hash_password("s3cret")
    assert hashed != "s3cret"
    assert verify_password("s3cret", hashed) is True
    assert verify_password("wrong", hashed) is False
    assert verify_password("s3cret", None) is False
    assert verify_password("s3cret", "not-a-hash") is False


def test_token_round_trip():
    token = create_access_token({"sub": "admin", "role": "admin"})
    claims = decode_token(token)
    assert (claims["sub"], claims["role"]) == ("admin", "admin")


def test_expired_token_is_rejected():
    token = create_access_token({"sub": "admin"}, expires_minutes=-1)
    with pytest.raises(JWTError):
        decode_token(token)


def test_seed_creates_users_once(db_session):
    assert ensure_user(db_session, "reviewer", "pass123", "analyst") is True
    assert ensure_user(db_session, "reviewer", "other", "admin") is False

    user = db_session.query(User).filter(User.username == "reviewer").one()
    assert user.role == "analyst"
    assert verify_password("pass123", user.password_hash)
