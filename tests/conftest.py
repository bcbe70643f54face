"""Pytest configuration and fixtures for testing."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Generator, Optional

import pytest

from cloudcode_proxy.accounts import Account, AccountPool, CredentialSource
from cloudcode_proxy.settings import GatewaySettings, OAuthClient

UPSTREAM_URL = "https://cloudcode.test"
TOKEN_URL = f"{UPSTREAM_URL}/token"

# Long enough to pass signature validation
SIGNATURE_A = "sig-a-" + "a" * 60
SIGNATURE_B = "sig-b-" + "b" * 60


# =============================================================================
# Clock and Sleep Doubles
# =============================================================================


class FakeClock:
    """Controllable epoch-millisecond clock for the account pool."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += int(ms)


class FakeSleep:
    """Records requested sleeps and advances the clock instead of sleeping."""

    def __init__(self, clock: Optional[FakeClock] = None) -> None:
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds * 1000)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock: FakeClock) -> FakeSleep:
    return FakeSleep(clock)


# =============================================================================
# Builders
# =============================================================================


def make_account(email: str, **kwargs: Any) -> Account:
    """Build an OAuth account with a refresh token derived from the email."""
    kwargs.setdefault("source", CredentialSource.OAUTH)
    kwargs.setdefault("refresh_token", f"refresh-{email}")
    return Account(email=email, **kwargs)


def build_settings(
    *,
    endpoints: Optional[list[str]] = None,
    max_attempts: int = 3,
    accounts: Optional[list[dict[str, Any]]] = None,
) -> GatewaySettings:
    """Settings pointed at the fake upstream, with deterministic retries.

    Args:
        endpoints: Generate endpoints (defaults to the fake upstream)
        max_attempts: Retry attempts for network/5xx faults
        accounts: Initial account dicts

    Returns:
        GatewaySettings for tests
    """
    settings = GatewaySettings()
    settings.upstream.endpoints = endpoints or [UPSTREAM_URL]
    settings.upstream.load_code_assist_endpoints = [UPSTREAM_URL]
    settings.upstream.onboard_poll_interval = 0
    settings.oauth.token_url = TOKEN_URL
    settings.oauth.clients = {
        "antigravity": OAuthClient(client_id="ag-client", client_secret="ag-secret"),
        "gemini-cli": OAuthClient(client_id="cli-client", client_secret="cli-secret"),
    }
    settings.retry.max_attempts = max_attempts
    settings.retry.initial_delay = 0.01
    settings.retry.jitter = 0
    settings.accounts = accounts or []
    return settings


def messages_request(text: str = "Hello", **overrides: Any) -> dict[str, Any]:
    """A minimal Anthropic Messages request."""
    payload: dict[str, Any] = {
        "model": "claude-sonnet-4-5",
        "max_tokens": 256,
        "messages": [{"role": "user", "content": text}],
    }
    payload.update(overrides)
    return payload


async def aiter_chunks(chunks: list[bytes]) -> AsyncIterator[bytes]:
    """Helper to create async iterator from list of bytes."""
    for chunk in chunks:
        yield chunk


def parse_sse_events(raw: bytes) -> list[dict[str, Any]]:
    """Parse Anthropic SSE bytes into ``{"event", "data"}`` dicts."""
    events = []
    for frame in raw.decode("utf-8").split("\n\n"):
        lines = [line for line in frame.split("\n") if line]
        event_line = next((line for line in lines if line.startswith("event: ")), None)
        data_line = next((line for line in lines if line.startswith("data: ")), None)
        if event_line and data_line:
            events.append({
                "event": event_line[len("event: "):],
                "data": json.loads(data_line[len("data: "):]),
            })
    return events


# =============================================================================
# Pool and Upstream Fixtures
# =============================================================================


@pytest.fixture
def pool(clock: FakeClock) -> AccountPool:
    """Pool with two OAuth accounts on a fake clock."""
    return AccountPool(
        [make_account("a@example.com"), make_account("b@example.com")],
        clock=clock,
    )


@pytest.fixture
def fake_cloudcode() -> Generator[Any, None, None]:
    """A FakeCloudCode app; use ``fake_cloudcode.transport()`` for clients."""
    from cloudcode_proxy.testing import FakeCloudCode

    upstream = FakeCloudCode()
    yield upstream
    upstream.clear()

