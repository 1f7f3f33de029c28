from datetime import datetime, timedelta, timezone

import jwt
import pytest

from src.auth.identity import (
    JWTIdentity,
    StaticIdentity,
    TokenExpired,
    TokenInvalid,
    decode_access_token,
)

SECRET = "test-secret-with-enough-bytes-for-hs256"


def _token(sub="user-1", expires_in=timedelta(minutes=5), secret=SECRET, **extra):
    payload = {"exp": datetime.now(timezone.utc) + expires_in, **extra}
    if sub is not None:
        payload["sub"] = sub
    return jwt.encode(payload, secret, algorithm="HS256")


def test_decode_valid_token():
    payload = decode_access_token(_token(), SECRET)
    assert payload["sub"] == "user-1"


def test_decode_expired_token():
    with pytest.raises(TokenExpired):
        decode_access_token(_token(expires_in=timedelta(minutes=-5)), SECRET)


@pytest.mark.parametrize("token", ["", "not-a-jwt", _token(secret="another-secret-with-enough-bytes-for-hs256"), _token(sub=None)])
def test_decode_invalid_tokens(token):
    with pytest.raises(TokenInvalid):
        decode_access_token(token, SECRET)


@pytest.mark.asyncio
async def test_jwt_identity_reads_subject():
    assert await JWTIdentity(_token(sub="user-7"), SECRET).current_user_id() == "user-7"


@pytest.mark.asyncio
@pytest.mark.parametrize("token", [None, "garbage", _token(expires_in=timedelta(minutes=-5))])
async def test_jwt_identity_signed_out(token):
    assert await JWTIdentity(token, SECRET).current_user_id() is None


@pytest.mark.asyncio
async def test_static_identity():
    assert await StaticIdentity("user-1").current_user_id() == "user-1"
    assert await StaticIdentity(None).current_user_id() is None
