"""
Integration tests for the session client against the mock nutrition API.
"""

import asyncio

import pytest
import httpx

from mocks.nutrition_api.server import MockNutritionServer
from session_client.app.main import SessionClient
from session_client.app.models import LegacyAuthResponse, TokensAuthResponse
from session_client.app.transport import HttpxTransport
from shared.config import SessionConfig
from shared.errors import AuthenticationRequired, ServerError, SessionExpired


class TestSessionFlow:
    """End-to-end token lifecycle over ASGI."""

    @pytest.fixture
    def server(self):
        """Mock API server."""
        return MockNutritionServer()

    @pytest.fixture
    def config(self):
        """Client configuration with fast retries."""
        return SessionConfig(
            api_base_url="https://testserver",
            refresh_min_interval=0,
            refresh_base_delay=0.01,
            refresh_max_delay=0.05
        )

    @pytest.fixture
    def client(self, server, config):
        """Session client wired to the mock server."""
        http_client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=server.app),
            base_url="https://testserver"
        )
        return SessionClient(config, transport=HttpxTransport(client=http_client))

    @pytest.mark.asyncio
    async def test_login_and_use_protected_api(self, client, server):
        """Login, create a meal, list meals."""
        async with client:
            auth = await client.login("demo@example.com", "password123")
            assert isinstance(auth, TokensAuthResponse)
            assert auth.user["email"] == "demo@example.com"
            assert await client.is_authenticated() is True

            created = await client.post("/api/meals", {"name": "Porridge", "calories": 320})
            assert created.status_code == 201

            listed = await client.get("/api/meals")
            assert listed.status_code == 200
            assert [meal["name"] for meal in listed.json()["meals"]] == ["Porridge"]

        assert server.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_wrong_password(self, client, server):
        with pytest.raises(AuthenticationRequired) as exc_info:
            await client.login("demo@example.com", "wrong")

        assert exc_info.value.message == "Invalid email or password"
        assert exc_info.value.details["status_code"] == 401
        assert (await client.store.get_pair()).empty
        assert server.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_protected_api_without_login(self, client):
        with pytest.raises(AuthenticationRequired):
            await client.get("/api/meals")

    @pytest.mark.asyncio
    async def test_register(self, client, server):
        await client.register(email="new@example.com", password="password123", firstName="New")

        assert "new@example.com" in server.users
        assert (await client.get("/api/meals")).status_code == 200

        with pytest.raises(AuthenticationRequired) as exc_info:
            await client.register(email="new@example.com", password="password123")
        assert exc_info.value.details["status_code"] == 409

    @pytest.mark.asyncio
    async def test_rejected_access_token_is_refreshed_transparently(self, client, server):
        await client.login("demo@example.com", "password123")
        old_access = await client.store.get_access()
        old_refresh = await client.store.get_refresh()
        server.revoke_access_token(old_access)

        response = await client.get("/api/meals")

        assert response.status_code == 200
        assert server.refresh_calls == 1
        assert await client.store.get_access() != old_access
        assert await client.store.get_refresh() != old_refresh

    @pytest.mark.asyncio
    async def test_concurrent_401s_trigger_one_refresh(self, client, server):
        await client.login("demo@example.com", "password123")
        server.revoke_access_token(await client.store.get_access())

        responses = await asyncio.gather(*[client.get("/api/meals") for _ in range(5)])

        assert [response.status_code for response in responses] == [200] * 5
        assert server.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_revoked_refresh_token_expires_session(self, client, server):
        await client.login("demo@example.com", "password123")
        server.revoke_access_token(await client.store.get_access())
        server.revoke_refresh_tokens()

        with pytest.raises(SessionExpired):
            await client.get("/api/meals")

        assert (await client.store.get_pair()).empty
        assert await client.is_authenticated() is False

    @pytest.mark.asyncio
    async def test_failing_refresh_endpoint_hits_attempt_cap(self, client, server):
        await client.login("demo@example.com", "password123")
        server.revoke_access_token(await client.store.get_access())
        server.refresh_failure_status = 503

        for _ in range(3):
            with pytest.raises(ServerError):
                await client.get("/api/meals")

        with pytest.raises(SessionExpired):
            await client.get("/api/meals")

        assert server.refresh_calls == 3
        assert (await client.store.get_pair()).empty

    @pytest.mark.asyncio
    async def test_login_resets_refresh_budget(self, client, server):
        await client.login("demo@example.com", "password123")
        server.revoke_access_token(await client.store.get_access())
        server.refresh_failure_status = 503
        for _ in range(2):
            with pytest.raises(ServerError):
                await client.get("/api/meals")

        server.refresh_failure_status = None
        await client.login("demo@example.com", "password123")

        assert client.coordinator.state.attempt_count == 0
        assert (await client.get("/api/meals")).status_code == 200

    @pytest.mark.asyncio
    async def test_legacy_login_keeps_refresh_token(self, client, server):
        await client.login("demo@example.com", "password123")
        refresh_token = await client.store.get_refresh()
        server.legacy_login = True

        auth = await client.login("demo@example.com", "password123")

        assert isinstance(auth, LegacyAuthResponse)
        assert auth.user["email"] == "demo@example.com"
        assert await client.store.get_refresh() == refresh_token
        assert (await client.get("/api/meals")).status_code == 200

    @pytest.mark.asyncio
    async def test_preemptive_refresh_before_expiry(self, client, server):
        server.access_ttl_seconds = 120
        await client.login("demo@example.com", "password123")
        old_access = await client.store.get_access()
        server.access_ttl_seconds = 900

        new_access = await client.housekeeper.maybe_preemptive_refresh()

        assert new_access is not None
        assert new_access != old_access
        assert server.refresh_calls == 1
        assert client.validator.is_expiring_soon(new_access) is False

    @pytest.mark.asyncio
    async def test_explicit_refresh(self, client, server):
        await client.login("demo@example.com", "password123")

        token = await client.refresh()

        assert token == await client.store.get_access()
        assert server.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_logout(self, client, server):
        await client.login("demo@example.com", "password123")

        await client.logout()

        assert server.logout_calls == 1
        assert (await client.store.get_pair()).empty
        with pytest.raises(AuthenticationRequired):
            await client.get("/api/meals")

    @pytest.mark.asyncio
    async def test_logout_without_session_still_clears(self, client, server):
        await client.logout()

        assert server.logout_calls == 0
        assert (await client.store.get_pair()).empty

    @pytest.mark.asyncio
    async def test_context_manager_runs_housekeeping(self, client):
        async with client:
            assert client.housekeeper.running is True
        assert client.housekeeper.running is False

    @pytest.mark.asyncio
    async def test_health(self, server):
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=server.app), base_url="https://testserver") as http:
            response = await http.get("/health")

        assert response.json() == {"status": "ok", "service": "mock-nutrition-api"}
