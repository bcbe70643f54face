"""Tests for access-token and project management."""

import asyncio

import httpx
import pytest

from cloudcode_proxy.accounts.credentials import CredentialManager, default_tier_id
from cloudcode_proxy.accounts.models import CredentialSource
from cloudcode_proxy.core.exceptions import (
    ApiError,
    AuthError,
    ConfigurationError,
    NetworkError,
    ProxyError,
    RateLimitError,
    UpstreamFault,
)
from cloudcode_proxy.testing.fake_upstream import LOAD_CODE_ASSIST_ROUTE, ONBOARD_ROUTE, TOKEN_ROUTE

from conftest import build_settings, make_account


def _manager(client: httpx.AsyncClient, **kwargs) -> CredentialManager:
    settings = build_settings()
    return CredentialManager(
        oauth=settings.oauth,
        upstream=settings.upstream,
        http_client=client,
        **kwargs,
    )


class MonotonicClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestTokens:
    """Tests for access-token retrieval and caching."""

    @pytest.mark.asyncio
    async def test_oauth_refresh_and_cache(self, fake_cloudcode):
        """Test that a refreshed token is reused until the cache expires."""
        async with httpx.AsyncClient(transport=fake_cloudcode.transport()) as client:
            manager = _manager(client)
            account = make_account("a@example.com")

            first = await manager.get_token(account)
            second = await manager.get_token(account)

        assert first == "access-refresh-a@example.com-1"
        assert second == first
        assert fake_cloudcode.token_requests == 1

        form = fake_cloudcode.received[0]["json"]
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-a@example.com"
        assert form["client_id"] == "ag-client"

    @pytest.mark.asyncio
    async def test_client_chosen_by_auth_type(self, fake_cloudcode):
        """Test that Gemini CLI accounts refresh with the Gemini CLI client."""
        async with httpx.AsyncClient(transport=fake_cloudcode.transport()) as client:
            manager = _manager(client)
            await manager.get_token(make_account("cli@example.com", auth_type="gemini-cli"))

        assert fake_cloudcode.received[0]["json"]["client_id"] == "cli-client"

    @pytest.mark.asyncio
    async def test_token_ttl_expiry(self, fake_cloudcode):
        """Test that an expired cached token is refreshed."""
        clock = MonotonicClock()
        async with httpx.AsyncClient(transport=fake_cloudcode.transport()) as client:
            manager = _manager(client, token_ttl_seconds=300, clock=clock)
            account = make_account("a@example.com")

            await manager.get_token(account)
            clock.now += 301
            token = await manager.get_token(account)

        assert token.endswith("-2")

    @pytest.mark.asyncio
    async def test_force_refresh(self, fake_cloudcode):
        """Test that force_refresh bypasses the cache."""
        async with httpx.AsyncClient(transport=fake_cloudcode.transport()) as client:
            manager = _manager(client)
            account = make_account("a@example.com")
            await manager.get_token(account)
            token = await manager.get_token(account, force_refresh=True)

        assert token.endswith("-2")

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_refresh(self, fake_cloudcode):
        """Test per-account serialization of refreshes."""
        async with httpx.AsyncClient(transport=fake_cloudcode.transport()) as client:
            manager = _manager(client)
            account = make_account("a@example.com")
            tokens = await asyncio.gather(*(manager.get_token(account) for _ in range(5)))

        assert len(set(tokens)) == 1
        assert fake_cloudcode.token_requests == 1

    @pytest.mark.asyncio
    async def test_revoked_refresh_token(self, fake_cloudcode):
        """Test that invalid_grant becomes an AuthError."""
        fake_cloudcode.revoked_refresh_tokens.add("refresh-a@example.com")
        async with httpx.AsyncClient(transport=fake_cloudcode.transport()) as client:
            manager = _manager(client)
            with pytest.raises(AuthError) as exc_info:
                await manager.get_token(make_account("a@example.com"))

        assert "invalid_grant" in exc_info.value.message
        assert exc_info.value.email == "a@example.com"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code, body, expected",
        [
            (401, {"error": "invalid_client"}, AuthError),
            (400, {"error": "unauthorized_client"}, AuthError),
            (429, {"error": "rate_limit_exceeded"}, RateLimitError),
            (400, {"error": "invalid_request"}, ApiError),
            (200, {"token_type": "Bearer"}, UpstreamFault),
            (503, {"error": "backendError"}, UpstreamFault),
        ],
    )
    async def test_token_endpoint_failures(self, status_code, body, expected):
        """Test that only a rejected credential is reported as an AuthError."""
        def handler(request):
            return httpx.Response(status_code, json=body)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            manager = _manager(client)
            with pytest.raises(ProxyError) as exc_info:
                await manager.get_token(make_account("a@example.com"))

        assert type(exc_info.value) is expected

    @pytest.mark.asyncio
    async def test_network_error(self):
        """Test that an unreachable token endpoint is a NetworkError."""
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            manager = _manager(client)
            with pytest.raises(NetworkError):
                await manager.get_token(make_account("a@example.com"))

    @pytest.mark.asyncio
    async def test_manual_and_database_sources(self):
        """Test static keys and database-backed tokens."""
        async with httpx.AsyncClient() as client:
            manager = _manager(client, database_token_reader=lambda path: f"db-token:{path}")
            manual = make_account(
                "m@example.com", source=CredentialSource.MANUAL, refresh_token=None, api_key="static-key"
            )
            database = make_account(
                "d@example.com", source=CredentialSource.DATABASE, refresh_token=None, db_path="/x/state.vscdb"
            )

            assert await manager.get_token(manual) == "static-key"
            assert await manager.get_token(database) == "db-token:/x/state.vscdb"

    @pytest.mark.asyncio
    async def test_missing_credential(self):
        """Test that an OAuth account without a refresh token cannot authenticate."""
        async with httpx.AsyncClient() as client:
            manager = _manager(client)
            with pytest.raises(AuthError):
                await manager.get_token(make_account("a@example.com", refresh_token=None))

    @pytest.mark.asyncio
    async def test_unknown_auth_type(self, fake_cloudcode):
        """Test that a missing OAuth client is a configuration error."""
        async with httpx.AsyncClient(transport=fake_cloudcode.transport()) as client:
            manager = _manager(client)
            with pytest.raises(ConfigurationError):
                await manager.get_token(make_account("a@example.com", auth_type="other"))


class TestProjects:
    """Tests for project discovery."""

    @pytest.mark.asyncio
    async def test_configured_project_used(self, fake_cloudcode):
        """Test that an account's own project skips discovery."""
        async with httpx.AsyncClient(transport=fake_cloudcode.transport()) as client:
            manager = _manager(client)
            project = await manager.get_project(make_account("a@example.com", project_id="mine"), "tok")

        assert project == "mine"
        assert fake_cloudcode.received == []

    @pytest.mark.asyncio
    async def test_discovered_once(self, fake_cloudcode):
        """Test loadCodeAssist discovery and caching."""
        async with httpx.AsyncClient(transport=fake_cloudcode.transport()) as client:
            manager = _manager(client)
            account = make_account("a@example.com")
            first = await manager.get_project(account, "tok")
            second = await manager.get_project(account, "tok")

        assert first == second == "fake-project"
        calls = [r for r in fake_cloudcode.received if r["path"] == LOAD_CODE_ASSIST_ROUTE]
        assert len(calls) == 1
        assert calls[0]["headers"]["authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_onboarding_when_no_project(self, fake_cloudcode):
        """Test that a missing project triggers onboarding."""
        fake_cloudcode.project_id = None
        async with httpx.AsyncClient(transport=fake_cloudcode.transport()) as client:
            manager = _manager(client)
            project = await manager.get_project(make_account("a@example.com"), "tok")

        assert project == "onboarded-project"
        onboard = [r for r in fake_cloudcode.received if r["path"] == ONBOARD_ROUTE]
        assert onboard[0]["json"]["tierId"] == "free-tier"
        assert "cloudaicompanionProject" not in onboard[0]["json"]

    @pytest.mark.asyncio
    async def test_default_project_on_failure(self):
        """Test the fallback to the configured default project."""
        def handler(request):
            return httpx.Response(500, text="boom")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            manager = _manager(client)
            project = await manager.get_project(make_account("a@example.com"), "tok")

        assert project == manager.upstream.default_project_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "load_body, onboard_body",
        [
            ("<html>maintenance</html>", None),
            ('["not", "an", "object"]', None),
            ('{"paidTier": "gold"}', "not json"),
            ('{"currentTier": {"id": "free-tier"}}', '{"done": true, "response": ["x"]}'),
        ],
    )
    async def test_unreadable_discovery_bodies(self, load_body, onboard_body):
        """Test that malformed discovery answers fall back to the default project."""
        def handler(request):
            if request.url.path.endswith("loadCodeAssist"):
                return httpx.Response(200, text=load_body)
            return httpx.Response(200, text=onboard_body or "{}")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            manager = _manager(client)
            project = await manager.get_project(make_account("a@example.com"), "tok")

        assert project == manager.upstream.default_project_id

    @pytest.mark.asyncio
    async def test_clear_project_cache(self, fake_cloudcode):
        """Test that clearing forces rediscovery."""
        async with httpx.AsyncClient(transport=fake_cloudcode.transport()) as client:
            manager = _manager(client)
            account = make_account("a@example.com")
            await manager.get_project(account, "tok")
            manager.clear_project_cache("a@example.com")
            await manager.get_project(account, "tok")

        calls = [r for r in fake_cloudcode.received if r["path"] == LOAD_CODE_ASSIST_ROUTE]
        assert len(calls) == 2
        assert all(r["path"] != TOKEN_ROUTE for r in fake_cloudcode.received)


class TestDefaultTier:
    def test_prefers_default(self):
        tiers = [{"id": "legacy"}, {"id": "standard", "isDefault": True}]
        assert default_tier_id(tiers) == "standard"

    def test_first_when_no_default(self):
        assert default_tier_id([{"id": "legacy"}, {"id": "free"}]) == "legacy"

    def test_invalid(self):
        assert default_tier_id(None) is None
        assert default_tier_id([]) is None
