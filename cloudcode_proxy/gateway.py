"""Composition root: wires settings, credential store, pool and executor."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

import httpx

from .accounts.credentials import CredentialManager
from .accounts.models import Account, CredentialSource
from .accounts.pool import AccountPool
from .accounts.store import CredentialStore, InMemoryCredentialStore
from .core.exceptions import ConversionError
from .core.executor import CloudCodeExecutor, MessageStream
from .core.models import AuthType
from .core.signatures import SignatureCache
from .messages.schema import SchemaSanitizer
from .settings import GatewaySettings, load_settings

logger = logging.getLogger("cloudcode-proxy")


class Gateway:
    """Entry point for the inbound transport.

    Args:
        settings: Gateway settings (defaults if omitted).
        store: Credential store; an in-memory store seeded from
            ``settings.accounts`` if omitted.
        http_client: Shared client for upstream, OAuth and discovery calls.
        pool_clock: Epoch-millisecond clock for the pool (tests).
        sleep: Awaitable sleep used by the executor (tests).
    """

    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        store: Optional[CredentialStore] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        pool_clock: Optional[Callable[[], int]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or GatewaySettings()
        if store is None:
            store = InMemoryCredentialStore(
                Account.from_dict(entry) for entry in self.settings.accounts
            )
        self.store = store

        caches = self.settings.caches
        pool_settings = self.settings.pool
        self.signature_cache = SignatureCache(
            capacity=caches.signature_capacity,
            ttl_seconds=caches.signature_ttl_seconds,
        )
        self.sanitizer = SchemaSanitizer(
            unsupported_keywords=self.settings.schema.unsupported_keywords,
            hinted_keywords=self.settings.schema.hinted_keywords,
        )
        self.pool = AccountPool(
            store.list_accounts(),
            sticky_wait_threshold_ms=pool_settings.sticky_wait_threshold_ms,
            default_cooldown_ms=pool_settings.default_cooldown_ms,
            session_affinity_capacity=pool_settings.session_affinity_capacity,
            session_affinity_ttl_seconds=caches.session_affinity_ttl_seconds,
            clock=pool_clock,
        )
        self.credentials = CredentialManager(
            oauth=self.settings.oauth,
            upstream=self.settings.upstream,
            http_client=http_client,
            token_ttl_seconds=caches.token_ttl_seconds,
        )
        self.executor = CloudCodeExecutor(
            self.pool,
            self.credentials,
            settings=self.settings,
            signature_cache=self.signature_cache,
            sanitizer=self.sanitizer,
            http_client=http_client,
            on_account_change=self._persist_account,
            sleep=sleep,
        )
        logger.info(f"Gateway ready with {len(self.pool.accounts)} account(s)")

    @classmethod
    def from_config_file(cls, path: Optional[str] = None, **kwargs: Any) -> "Gateway":
        return cls(load_settings(path), **kwargs)

    async def __aenter__(self) -> "Gateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.executor.aclose()
        await self.credentials.aclose()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def handle_messages(
        self,
        payload: Mapping[str, Any],
        stream: Optional[bool] = None,
        disconnect_checker: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> Union[dict[str, Any], MessageStream]:
        """Serve one Anthropic Messages request.

        Args:
            payload: Request body
            stream: Force streaming on/off (defaults to ``payload["stream"]``)
            disconnect_checker: Returns True once the client has gone away

        Returns:
            The response body, or a MessageStream of SSE bytes when streaming

        Raises:
            ProxyError: With ``status_code`` and ``to_payload()`` for the client
        """
        if not isinstance(payload, Mapping):
            raise ConversionError("Request body must be a JSON object")
        if not payload.get("model"):
            raise ConversionError("'model' is required")
        if not isinstance(payload.get("messages"), list) or not payload["messages"]:
            raise ConversionError("'messages' must be a non-empty list")

        if stream is None:
            stream = bool(payload.get("stream"))
        if stream:
            return await self.executor.stream_message(payload, disconnect_checker)
        return await self.executor.send_message(payload)

    # ------------------------------------------------------------------
    # Account administration
    # ------------------------------------------------------------------

    def _persist_account(self, account: Account) -> None:
        self.store.upsert_account(account)

    def _persist(self, changed: bool, email: str) -> bool:
        if changed:
            account = self.pool.get_account(email)
            if account is not None:
                self._persist_account(account)
        return changed

    def add_oauth_account(
        self,
        email: str,
        refresh_token: str,
        project_id: Optional[str] = None,
        auth_type: str = AuthType.ANTIGRAVITY.value,
    ) -> Account:
        """Register the result of a completed OAuth flow.

        An existing account with the same email is re-authorized: its new
        refresh token replaces the old one and its invalid flag is cleared.
        """
        account = Account(
            email=email,
            source=CredentialSource.OAUTH,
            refresh_token=refresh_token,
            project_id=project_id,
            auth_type=auth_type,
        )
        self.pool.add_account(account)
        self.credentials.invalidate_token(email)
        self.credentials.clear_project_cache(email)
        self._persist(True, email)
        return account

    def remove_account(self, email: str) -> bool:
        removed = self.pool.remove_account(email)
        if removed:
            self.store.remove_account(email)
            self.credentials.invalidate_token(email)
            self.credentials.clear_project_cache(email)
        return removed

    def set_account_enabled(self, email: str, enabled: bool) -> bool:
        return self._persist(self.pool.set_enabled(email, enabled), email)

    def mark_account_valid(self, email: str) -> bool:
        return self._persist(self.pool.mark_valid(email), email)

    def reset_rate_limits(self) -> None:
        if self.pool.reset_all():
            for account in self.pool.accounts:
                self._persist_account(account)

    def account_status(self) -> list[dict[str, Any]]:
        return self.pool.snapshot()
