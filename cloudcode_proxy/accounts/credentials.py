"""Access tokens and project ids for pool accounts.

Tokens are cached per account for a short TTL and refreshed lazily. Project
ids are discovered once per account (loadCodeAssist, then onboarding, then the
configured default project) and kept for the life of the process.

Refreshes and discovery are serialized per account, so concurrent requests on
one account trigger a single refresh.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Mapping, Optional

import httpx

from ..core.cache import BoundedTTLCache
from ..core.exceptions import ApiError, AuthError, NetworkError, RateLimitError, UpstreamFault
from ..core.upstream import format_httpx_error
from ..fingerprint.generator import build_fingerprint_headers
from ..settings import OAuthSettings, UpstreamSettings
from .database import read_database_token
from .models import Account, CredentialSource

logger = logging.getLogger("cloudcode-proxy")

DEFAULT_TOKEN_TTL_SECONDS = 300.0

# OAuth error codes meaning the refresh token itself is no longer accepted
CREDENTIAL_REJECTED_ERRORS = frozenset({"invalid_grant", "unauthorized_client"})

LOAD_CODE_ASSIST_HEADERS = {
    "User-Agent": "google-api-nodejs-client/9.15.1",
    "X-Goog-Api-Client": "google-cloud-sdk vscode_cloudshelleditor/0.1",
}

CLIENT_METADATA = {
    "ideType": "IDE_UNSPECIFIED",
    "platform": "PLATFORM_UNSPECIFIED",
    "pluginType": "GEMINI",
}


def default_tier_id(allowed_tiers: Any) -> Optional[str]:
    """The default tier from loadCodeAssist ``allowedTiers``, else the first one."""
    if not isinstance(allowed_tiers, list):
        return None
    tiers = [t for t in allowed_tiers if isinstance(t, Mapping) and t.get("id")]
    for tier in tiers:
        if tier.get("isDefault"):
            return tier["id"]
    return tiers[0]["id"] if tiers else None


def _json_object(response: httpx.Response) -> Optional[dict[str, Any]]:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _tier_id(tier: Any) -> Optional[str]:
    return tier.get("id") if isinstance(tier, Mapping) else None


def _project_from(data: Mapping[str, Any]) -> Optional[str]:
    project = data.get("cloudaicompanionProject")
    if isinstance(project, str) and project:
        return project
    if isinstance(project, Mapping) and project.get("id"):
        return project["id"]
    return None


class CredentialManager:
    """Token and project cache for pool accounts.

    Args:
        oauth: OAuth token endpoint and per-auth-type clients.
        upstream: Endpoints and defaults used for project discovery.
        http_client: Client for OAuth and discovery calls (injectable).
        token_ttl_seconds: How long an access token is reused.
        clock: Monotonic clock in seconds for the token cache.
        database_token_reader: Reads a token for ``database`` accounts.
    """

    def __init__(
        self,
        oauth: Optional[OAuthSettings] = None,
        upstream: Optional[UpstreamSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        token_ttl_seconds: float = DEFAULT_TOKEN_TTL_SECONDS,
        clock: Optional[Callable[[], float]] = None,
        database_token_reader: Callable[[Optional[str]], str] = read_database_token,
    ) -> None:
        self.oauth = oauth or OAuthSettings()
        self.upstream = upstream or UpstreamSettings()
        self._client = http_client
        self._owns_client = http_client is None
        self._token_cache: BoundedTTLCache[str, str] = BoundedTTLCache(
            max_entries=None, ttl_seconds=token_ttl_seconds, clock=clock
        )
        self._project_cache: BoundedTTLCache[str, str] = BoundedTTLCache(max_entries=None)
        self._locks: dict[str, asyncio.Lock] = {}
        self._read_database_token = database_token_reader

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self.upstream.read_timeout, connect=self.upstream.connect_timeout
                )
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _lock_for(self, email: str) -> asyncio.Lock:
        lock = self._locks.get(email)
        if lock is None:
            lock = self._locks[email] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def get_token(self, account: Account, force_refresh: bool = False) -> str:
        """Return a usable access token for ``account``.

        Raises:
            AuthError: The credential was rejected (re-authorization needed).
            RateLimitError: The token endpoint throttled the refresh.
            NetworkError: The token endpoint could not be reached.
            ApiError: The token endpoint refused the request for another reason.
        """
        if force_refresh:
            self._token_cache.pop(account.email)
        cached = self._token_cache.get(account.email)
        if cached:
            return cached

        async with self._lock_for(account.email):
            # Another request may have refreshed while we waited.
            cached = self._token_cache.get(account.email)
            if cached:
                return cached

            if account.source is CredentialSource.OAUTH and account.refresh_token:
                token = await self.refresh_access_token(account)
                logger.info(f"Refreshed OAuth token for: {account.email}")
            elif account.source is CredentialSource.MANUAL and account.api_key:
                token = account.api_key
            elif account.source is CredentialSource.DATABASE:
                token = await asyncio.to_thread(self._read_database_token, account.db_path)
            else:
                raise AuthError(
                    f"Account {account.email} has no usable {account.source.value} credential",
                    email=account.email,
                )

            self._token_cache.put(account.email, token)
            return token

    async def refresh_access_token(self, account: Account) -> str:
        """Exchange the account's refresh token at the OAuth token endpoint."""
        client_config = self.oauth.client_for(account.auth_type)
        data = {
            "client_id": client_config.client_id,
            "client_secret": client_config.client_secret,
            "refresh_token": account.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = await self.client.post(self.oauth.token_url, data=data)
        except httpx.HTTPError as exc:
            message = format_httpx_error(exc, self.oauth.token_url)
            logger.warning(f"Failed to refresh token for {account.email} due to network error: {message}")
            raise NetworkError(message, is_timeout=isinstance(exc, httpx.TimeoutException)) from exc

        if response.status_code >= 500:
            raise UpstreamFault(
                f"Token endpoint returned {response.status_code}", response.status_code
            )
        body = _json_object(response) or {}

        if response.status_code == 200 and body.get("access_token"):
            return body["access_token"]

        error = body.get("error") or f"HTTP {response.status_code}"
        description = body.get("error_description") or response.text[:200]
        message = f"{error}: {description}"
        logger.error(f"Failed to refresh token for {account.email}: {message}")

        if response.status_code == 401 or error in CREDENTIAL_REJECTED_ERRORS:
            raise AuthError(message, email=account.email)
        if response.status_code == 429:
            raise RateLimitError(f"Token endpoint rate limited: {message}")
        if response.status_code == 200:
            raise UpstreamFault(f"Token endpoint returned no access token: {message}", 502)
        raise ApiError(f"Token refresh failed: {message}", response.status_code)

    def invalidate_token(self, email: Optional[str] = None) -> None:
        """Forget a cached token (or all of them) so the next call refreshes."""
        if email:
            self._token_cache.pop(email)
        else:
            self._token_cache.clear()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def get_project(self, account: Account, token: str) -> str:
        """Return the Cloud Code project for ``account``, discovering it once."""
        cached = self._project_cache.get(account.email)
        if cached:
            return cached

        async with self._lock_for(f"project:{account.email}"):
            cached = self._project_cache.get(account.email)
            if cached:
                return cached
            if account.project_id:
                project = account.project_id
            else:
                project = await self.discover_project(token, account)
            self._project_cache.put(account.email, project)
            return project

    def clear_project_cache(self, email: Optional[str] = None) -> None:
        if email:
            self._project_cache.pop(email)
        else:
            self._project_cache.clear()

    def _discovery_headers(self, token: str, account: Optional[Account]) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            **LOAD_CODE_ASSIST_HEADERS,
        }
        if account is not None:
            headers.update(build_fingerprint_headers(account.fingerprint))
        return headers

    async def discover_project(self, token: str, account: Optional[Account] = None) -> str:
        """Find the account's project via loadCodeAssist, onboarding if needed.

        Falls back to the configured default project; discovery problems never
        fail the request.
        """
        headers = self._discovery_headers(token, account)
        body = {"metadata": {**CLIENT_METADATA, "duetProject": self.upstream.default_project_id}}
        last_error: Optional[str] = None
        load_data: Optional[Mapping[str, Any]] = None

        for endpoint in self.upstream.load_code_assist_endpoints:
            url = f"{endpoint}/v1internal:loadCodeAssist"
            try:
                response = await self.client.post(url, json=body, headers=headers)
            except httpx.HTTPError as exc:
                last_error = format_httpx_error(exc, url)
                logger.debug(f"loadCodeAssist error at {endpoint}: {last_error}")
                continue
            if response.status_code != 200:
                last_error = f"{response.status_code} - {response.text[:200]}"
                logger.debug(f"loadCodeAssist failed at {endpoint}: {last_error}")
                continue

            load_data = _json_object(response)
            if load_data is None:
                last_error = f"unreadable loadCodeAssist body: {response.text[:200]}"
                logger.debug(f"loadCodeAssist at {endpoint}: {last_error}")
                continue
            project = _project_from(load_data)
            if project:
                logger.info(f"Discovered project: {project}")
                return project
            logger.info("No project in loadCodeAssist response, attempting onboardUser...")
            break

        if load_data is None:
            logger.warning(f"loadCodeAssist failed for all endpoints: {last_error}")
            return self.upstream.default_project_id

        tier_id = (
            _tier_id(load_data.get("paidTier"))
            or _tier_id(load_data.get("currentTier"))
            or default_tier_id(load_data.get("allowedTiers"))
            or "free-tier"
        )
        is_free = "free" in str(tier_id).lower()
        logger.info(f"Onboarding user with tier: {tier_id}")
        project = await self.onboard_user(
            token,
            tier_id,
            None if is_free else self.upstream.default_project_id,
            headers=headers,
        )
        if project:
            logger.info(f"Successfully onboarded, project: {project}")
            return project

        logger.warning(f"Onboarding failed, using default project: {self.upstream.default_project_id}")
        return self.upstream.default_project_id

    async def onboard_user(
        self,
        token: str,
        tier_id: str,
        project_id: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Optional[str]:
        """Run onboardUser and poll its long-running operation for a project id."""
        headers = headers or self._discovery_headers(token, None)
        body: dict[str, Any] = {"tierId": tier_id, "metadata": dict(CLIENT_METADATA)}
        if project_id:
            body["cloudaicompanionProject"] = project_id
            body["metadata"]["duetProject"] = project_id

        for endpoint in self.upstream.load_code_assist_endpoints:
            url = f"{endpoint}/v1internal:onboardUser"
            for attempt in range(self.upstream.onboard_max_attempts):
                try:
                    response = await self.client.post(url, json=body, headers=headers)
                except httpx.HTTPError as exc:
                    logger.debug(f"onboardUser error at {endpoint}: {format_httpx_error(exc, url)}")
                    break
                if response.status_code != 200:
                    logger.debug(f"onboardUser failed at {endpoint}: {response.status_code}")
                    break

                data = _json_object(response)
                if data is None:
                    logger.debug(f"onboardUser returned an unreadable body at {endpoint}")
                    break
                if data.get("done"):
                    operation = data.get("response")
                    project = _project_from(operation) if isinstance(operation, Mapping) else None
                    return project or project_id
                logger.debug(f"onboardUser pending (attempt {attempt + 1})")
                if self.upstream.onboard_poll_interval > 0:
                    await asyncio.sleep(self.upstream.onboard_poll_interval)
        return None


