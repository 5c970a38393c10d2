"""Tests for bearer token handling."""

from datetime import timedelta

import jwt
import pytest
from fastapi import HTTPException

from firmware_hub.auth import (
    SCOPE_ADMIN,
    SCOPE_PUBLISH,
    create_access_token,
    decode_token,
)


def test_token_round_trip(settings):
    token = create_access_token("ci-pipeline", SCOPE_PUBLISH, settings)

    data = decode_token(token, settings)

    assert data.sub == "ci-pipeline"
    assert data.scope == SCOPE_PUBLISH


def test_unknown_scope_rejected(settings):
    with pytest.raises(ValueError):
        create_access_token("someone", "superuser", settings)


def test_expired_token(settings):
    token = create_access_token(
        "operator", SCOPE_ADMIN, settings, expires_delta=timedelta(seconds=-1)
    )

    with pytest.raises(HTTPException) as exc_info:
        decode_token(token, settings)

    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Token has expired"


def test_token_signed_with_other_secret(settings):
    forged = jwt.encode(
        {"sub": "intruder", "scope": SCOPE_ADMIN, "exp": 9999999999},
        "wrong-secret",
        algorithm="HS256",
    )

    with pytest.raises(HTTPException) as exc_info:
        decode_token(forged, settings)

    assert exc_info.value.status_code == 401


def test_token_missing_claims(settings):
    token = jwt.encode({"sub": "nobody", "exp": 9999999999}, settings.jwt_secret, algorithm="HS256")

    with pytest.raises(HTTPException) as exc_info:
        decode_token(token, settings)

    assert exc_info.value.status_code == 401
