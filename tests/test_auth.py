"""
Authentication Tests
====================

Bearer token checks on the user-facing endpoints.
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt

from app.config import settings
from app.core.errors import ErrorCodes
from app.core.security import TokenExpired, decode_token, token_subject
from app.db.session import get_db
from app.main import app

STATUS_URL = "/api/v1/subscriptions/status"


def make_token(subject="user-0001", expires_in=timedelta(minutes=15), secret=None, **claims) -> str:
    payload = {"sub": subject, "exp": datetime.now(timezone.utc) + expires_in, **claims}
    return jwt.encode(payload, secret or settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
async def anonymous_client(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "DEV_AUTH_DISABLED", False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


class TestTokens:
    """Tests for token decoding."""

    def test_valid_token(self):
        payload = decode_token(make_token())

        assert token_subject(payload) == "user-0001"

    def test_expired_token(self):
        with pytest.raises(TokenExpired):
            decode_token(make_token(expires_in=timedelta(minutes=-1)))

    def test_bad_signature(self):
        assert decode_token(make_token(secret="x" * 40)) is None

    def test_refresh_tokens_are_not_access_tokens(self):
        assert token_subject({"sub": "user-0001", "type": "refresh"}) is None

    def test_missing_subject(self):
        assert token_subject({"type": "access"}) is None


class TestEndpointAuth:
    """Tests for the bearer dependency."""

    @pytest.mark.asyncio
    async def test_missing_token(self, anonymous_client):
        response = await anonymous_client.get(STATUS_URL)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == ErrorCodes.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_expired_token(self, anonymous_client):
        token = make_token(expires_in=timedelta(minutes=-1))

        response = await anonymous_client.get(STATUS_URL, headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == ErrorCodes.AUTH_TOKEN_EXPIRED

    @pytest.mark.asyncio
    async def test_valid_token(self, anonymous_client):
        response = await anonymous_client.get(
            STATUS_URL, headers={"Authorization": f"Bearer {make_token()}"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["tier"] == "free"

    @pytest.mark.asyncio
    async def test_webhooks_need_no_token(self, anonymous_client):
        response = await anonymous_client.post(
            "/api/v1/subscriptions/webhook/android", json={"message": {}}
        )

        assert response.status_code == 400
