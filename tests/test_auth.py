from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from docdash.auth import context_from_token
from fakes import make_token


def test_valid_token():
    context = context_from_token(make_token("u1"))
    assert context.user_id == "u1"
    assert context.email == "u1@example.com"


@pytest.mark.parametrize("token", [
    None,
    "",
    "not-a-jwt",
    make_token("u1", aud="someone-else"),
    make_token("u1", exp=datetime.now(timezone.utc) - timedelta(minutes=1)),
    make_token("u1", sub=""),
])
def test_rejected_tokens(token):
    with pytest.raises(HTTPException) as excinfo:
        context_from_token(token)
    assert excinfo.value.status_code == 401
