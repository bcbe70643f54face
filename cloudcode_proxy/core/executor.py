"""Request execution against Cloud Code with retries and account failover.

One inbound request goes through:

1. translation to the upstream format (once; conversion errors surface here),
2. account selection from the pool (sticky per session),
3. token and project lookup for the account,
4. the HTTP call, trying each configured endpoint on network/5xx faults,
5. translation of the response, or incremental re-streaming.

Failure policy:
- network and 5xx faults back off and retry, up to ``retry.max_attempts``;
- rate limits mark the account (per model) and fail over immediately; when
  every account is limited the executor waits once and makes a final attempt;
- a 401 refreshes the token and retries once, then marks the account invalid;
- other 4xx responses surface immediately.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Mapping, Optional

import httpx

from ..accounts.credentials import CredentialManager
from ..accounts.models import Account
from ..accounts.pool import AccountPool, format_duration
from ..messages.schema import SchemaSanitizer
from ..messages.stream_adapter import CloudCodeToMessagesStreamAdapter
from ..messages.translator import cloudcode_to_messages, messages_to_cloudcode
from ..settings import GatewaySettings
from .exceptions import (
    ApiError,
    AuthError,
    NetworkError,
    NoAccountsError,
    ProxyError,
    RateLimitError,
    UpstreamFault,
)
from .models import strip_model_prefix
from .request_builder import build_request_for_account
from .session import derive_session_id
from .signatures import SignatureCache
from .sse import STREAM_ERROR_CHECK_BUFFER_SIZE, detect_sse_stream_error
from .upstream import Endpoint, format_httpx_error

logger = logging.getLogger("cloudcode-proxy")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")


class TokenRejected(AuthError):
    """Upstream answered 401 for an access token."""


@dataclass
class RetryState:
    """Bookkeeping for one inbound request's attempts."""

    attempt: int = 0
    next_delay: float = 0.0
    account_email: Optional[str] = None
    last_error: Optional[ProxyError] = None
    accounts_tried: list[str] = field(default_factory=list)
    rate_limit_failovers: int = 0
    exhaustion_waited: bool = False
    sticky_waited: bool = False


@dataclass
class _OpenStream:
    response: httpx.Response
    chunks: AsyncIterator[bytes]
    buffered: list[bytes]

    async def aclose(self) -> None:
        await self.response.aclose()


class MessageStream:
    """Anthropic SSE bytes relayed from one committed upstream response.

    The stream owns the upstream response. Iterating to the end releases it;
    a caller that stops early or never iterates must ``aclose()`` the stream
    (or use it as an async context manager).
    """

    def __init__(self, events: AsyncGenerator[bytes, None], opened: _OpenStream) -> None:
        self._events = events
        self._opened = opened

    @property
    def is_closed(self) -> bool:
        return self._opened.response.is_closed

    def __aiter__(self) -> "MessageStream":
        return self

    async def __anext__(self) -> bytes:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        try:
            await self._events.aclose()
        finally:
            await self._opened.aclose()

    async def __aenter__(self) -> "MessageStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def parse_duration_ms(value: Any) -> Optional[int]:
    """Parse ``"3.5s"``, ``"1h2m3s"``, ``"500ms"`` or a number of seconds."""
    if isinstance(value, (int, float)):
        return int(float(value) * 1000)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return int(float(text) * 1000)
    except ValueError:
        pass
    total = 0.0
    matched = False
    for number, unit in _DURATION_PART.findall(text):
        matched = True
        amount = float(number)
        total += {"h": 3_600_000, "m": 60_000, "s": 1000, "ms": 1}[unit] * amount
    return int(total) if matched else None


def parse_reset_ms(headers: Mapping[str, str], body: Any) -> Optional[int]:
    """Extract the rate-limit reset delay from a 429 response.

    Looks at the ``Retry-After`` header, then at the Google error details
    (``RetryInfo.retryDelay``, ``quotaResetDelay`` and
    ``quotaResetTimeStamp`` metadata).
    """
    retry_after = headers.get("retry-after")
    if retry_after:
        parsed = parse_duration_ms(retry_after)
        if parsed is not None:
            return parsed
        try:
            reset_at = parsedate_to_datetime(retry_after)
        except (TypeError, ValueError):
            reset_at = None
        if reset_at is not None:
            return max(0, int((reset_at - datetime.now(timezone.utc)).total_seconds() * 1000))

    if isinstance(body, list) and body:
        body = body[0]
    error = body.get("error") if isinstance(body, Mapping) else None
    details = error.get("details") if isinstance(error, Mapping) else None
    for detail in details or []:
        if not isinstance(detail, Mapping):
            continue
        parsed = parse_duration_ms(detail.get("retryDelay"))
        if parsed is not None:
            return parsed
        metadata = detail.get("metadata") or {}
        parsed = parse_duration_ms(metadata.get("quotaResetDelay"))
        if parsed is not None:
            return parsed
        stamp = metadata.get("quotaResetTimeStamp")
        if isinstance(stamp, str):
            try:
                reset_at = datetime.fromisoformat(stamp.replace("Z", "+00:00"))
            except ValueError:
                continue
            return max(0, int((reset_at - datetime.now(timezone.utc)).total_seconds() * 1000))
    return None


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, list) and body:
        body = body[0]
    if isinstance(body, Mapping):
        error = body.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
    return fallback


def classify_upstream_error(
    status_code: int,
    body_text: str,
    headers: Optional[Mapping[str, str]] = None,
    model_id: Optional[str] = None,
) -> ProxyError:
    """Map an upstream error response to the gateway exception for it."""
    try:
        body = json.loads(body_text) if body_text else None
    except json.JSONDecodeError:
        body = None
    message = _error_message(body, body_text[:500] or f"HTTP {status_code}")

    if status_code == 429 or ("RESOURCE_EXHAUSTED" in body_text and status_code < 500):
        return RateLimitError(
            message,
            reset_ms=parse_reset_ms(headers or {}, body),
            model_id=model_id,
        )
    if status_code == 401:
        return TokenRejected(message)
    if status_code >= 500:
        return UpstreamFault(message, status_code)
    return ApiError(message, status_code)


class CloudCodeExecutor:
    """Runs Messages requests against Cloud Code through the account pool.

    Args:
        pool: Account pool used for selection and state transitions.
        credentials: Token and project provider.
        settings: Gateway settings (defaults if omitted).
        signature_cache: Cache for thinking-signature recovery.
        sanitizer: Tool schema sanitizer.
        http_client: Client for upstream calls (injectable for tests).
        on_account_change: Called with an account after a state change that
            should be persisted.
        sleep: Awaitable sleep (injectable for tests).
        rng: Returns floats in [0, 1) for backoff jitter.
    """

    def __init__(
        self,
        pool: AccountPool,
        credentials: CredentialManager,
        settings: Optional[GatewaySettings] = None,
        signature_cache: Optional[SignatureCache] = None,
        sanitizer: Optional[SchemaSanitizer] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        on_account_change: Optional[Callable[[Account], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.pool = pool
        self.credentials = credentials
        self.settings = settings or GatewaySettings()
        self.signature_cache = signature_cache if signature_cache is not None else SignatureCache()
        self.sanitizer = sanitizer
        self.endpoints = [Endpoint(url) for url in self.settings.upstream.endpoints]
        self.timeout = httpx.Timeout(
            self.settings.upstream.read_timeout,
            connect=self.settings.upstream.connect_timeout,
        )
        self._client = http_client
        self._owns_client = http_client is None
        self._on_account_change = on_account_change
        self._sleep = sleep
        self._rng = rng

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send_message(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Execute a non-streaming Messages request.

        Returns:
            Anthropic Messages API response body

        Raises:
            ProxyError: On any failure, after retries and failover
        """
        model = str(payload.get("model") or "")
        session_id = derive_session_id(payload)
        google_request = self._translate(payload, session_id)

        result = await self._execute(payload, google_request, session_id, stream=False)
        return cloudcode_to_messages(
            result,
            model=model,
            session_id=session_id,
            signature_cache=self.signature_cache,
        )

    async def stream_message(
        self,
        payload: Mapping[str, Any],
        disconnect_checker: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> MessageStream:
        """Execute a streaming Messages request.

        Retries and failover happen before this coroutine returns; the
        returned stream is committed to one upstream response. Errors after
        that point become a single ``error`` event. Close the stream if it is
        not consumed to the end.

        Args:
            payload: Anthropic Messages API request body
            disconnect_checker: Returns True once the client has gone away

        Returns:
            MessageStream of Anthropic Messages SSE bytes

        Raises:
            ProxyError: If no upstream stream could be opened
        """
        model = str(payload.get("model") or "")
        session_id = derive_session_id(payload)
        google_request = self._translate(payload, session_id)

        opened: _OpenStream = await self._execute(payload, google_request, session_id, stream=True)
        adapter = CloudCodeToMessagesStreamAdapter(
            message_id=f"msg_{uuid.uuid4().hex[:24]}",
            model=model,
            session_id=session_id,
            signature_cache=self.signature_cache,
        )
        return MessageStream(self._relay(opened, adapter, disconnect_checker), opened)

    # ------------------------------------------------------------------
    # Attempt loop
    # ------------------------------------------------------------------

    def _translate(self, payload: Mapping[str, Any], session_id: str) -> dict[str, Any]:
        return messages_to_cloudcode(
            payload,
            session_id=session_id,
            signature_cache=self.signature_cache,
            sanitizer=self.sanitizer,
        )

    def _persist(self, changed: bool, email: str) -> None:
        if not changed or self._on_account_change is None:
            return
        account = self.pool.get_account(email)
        if account is not None:
            self._on_account_change(account)

    def _backoff_delay(self, attempt: int) -> float:
        retry = self.settings.retry
        delay = min(retry.initial_delay * (2 ** max(0, attempt - 1)), retry.max_delay)
        if retry.jitter:
            delay *= 1 + retry.jitter * (2 * self._rng() - 1)
        return max(0.0, delay)

    async def _execute(
        self,
        payload: Mapping[str, Any],
        google_request: Mapping[str, Any],
        session_id: str,
        stream: bool,
    ) -> Any:
        model = str(payload.get("model") or "")
        model_id = strip_model_prefix(model)
        retry = self.settings.retry
        pool_settings = self.settings.pool
        state = RetryState()

        while True:
            selection = self.pool.select_account(
                session_id,
                model_id,
                allow_wait=not (state.sticky_waited or isinstance(state.last_error, RateLimitError)),
            )

            if selection.account is None:
                if not self.pool.has_usable_accounts():
                    if isinstance(state.last_error, AuthError):
                        raise state.last_error
                    raise NoAccountsError("No enabled, valid accounts are available")
                wait_ms = selection.wait_ms
                if state.exhaustion_waited or wait_ms > pool_settings.max_wait_before_error_ms:
                    logger.error(
                        f"All accounts rate limited for {model_id}; "
                        f"next reset in {format_duration(wait_ms)}"
                    )
                    raise RateLimitError(
                        f"All accounts are rate limited for {model_id}. "
                        f"Retry in {format_duration(wait_ms)}.",
                        reset_ms=wait_ms,
                        model_id=model_id,
                    )
                wait_ms = min(wait_ms, retry.max_wait_ms)
                logger.warning(f"All accounts rate limited; waiting {format_duration(wait_ms)}")
                state.exhaustion_waited = True
                await self._sleep(wait_ms / 1000)
                self.pool.clear_expired()
                continue

            account = selection.account
            if selection.wait_ms > 0:
                state.sticky_waited = True
                await self._sleep(min(selection.wait_ms, retry.max_wait_ms) / 1000)
                self.pool.clear_expired()
                continue

            state.account_email = account.email
            if account.email not in state.accounts_tried:
                state.accounts_tried.append(account.email)
            logger.info(f"Attempt {state.attempt + 1} for {model_id} on {account.email}")

            try:
                return await self._attempt_on_account(
                    account, model, model_id, google_request, session_id, stream
                )
            except RateLimitError as exc:
                state.last_error = exc
                state.rate_limit_failovers += 1
                changed = self.pool.mark_rate_limited(
                    account.email, exc.reset_ms, exc.model_id or model_id
                )
                self._persist(changed, account.email)
                # Short resets lapse between attempts; cap total failovers
                max_failovers = max(1, len(self.pool.accounts)) * retry.max_attempts
                if state.rate_limit_failovers >= max_failovers:
                    logger.error(
                        f"Giving up on {model_id} after {state.rate_limit_failovers} rate-limited attempts"
                    )
                    raise RateLimitError(
                        f"Rate limited on every attempt for {model_id}: {exc.message}",
                        reset_ms=exc.reset_ms,
                        model_id=model_id,
                    ) from exc
                logger.warning(f"Rate limited on {account.email}; failing over")
            except AuthError as exc:
                state.last_error = exc
                self.credentials.invalidate_token(account.email)
                self._persist(self.pool.mark_invalid(account.email, exc.message), account.email)
                logger.warning(f"Credential rejected for {account.email}; failing over")
            except (NetworkError, UpstreamFault) as exc:
                state.last_error = exc
                state.attempt += 1
                if state.attempt >= retry.max_attempts:
                    logger.error(f"Giving up after {state.attempt} attempts: {exc}")
                    raise
                state.next_delay = self._backoff_delay(state.attempt)
                logger.info(f"Retrying in {state.next_delay:.2f}s after: {exc}")
                await self._sleep(state.next_delay)

    async def _attempt_on_account(
        self,
        account: Account,
        model: str,
        model_id: str,
        google_request: Mapping[str, Any],
        session_id: str,
        stream: bool,
    ) -> Any:
        token = await self.credentials.get_token(account)
        project_id = await self.credentials.get_project(account, token)

        async def call(access_token: str) -> Any:
            upstream = self.settings.upstream
            body, headers = build_request_for_account(
                google_request,
                model,
                account,
                access_token,
                project_id,
                stream=stream,
                session_id=session_id,
                model_aliases=upstream.model_aliases,
                system_instruction=upstream.system_instruction,
                gemini_cli_user_agent=upstream.gemini_cli_user_agent,
            )
            return await self._call_endpoints(body, headers, model_id, stream)

        try:
            return await call(token)
        except TokenRejected:
            logger.info(f"Token rejected for {account.email}; refreshing")
            self.credentials.invalidate_token(account.email)
            token = await self.credentials.get_token(account, force_refresh=True)

        try:
            return await call(token)
        except TokenRejected as exc:
            raise AuthError(f"Token rejected after refresh: {exc.message}", email=account.email) from exc

    async def _call_endpoints(
        self,
        body: Mapping[str, Any],
        headers: Mapping[str, str],
        model_id: str,
        stream: bool,
    ) -> Any:
        *fallbacks, last = self.endpoints
        for endpoint in fallbacks:
            try:
                return await self._call_endpoint(endpoint, body, headers, model_id, stream)
            except (NetworkError, UpstreamFault) as exc:
                logger.warning(f"Endpoint {endpoint.name} failed: {exc}")
        return await self._call_endpoint(last, body, headers, model_id, stream)

    async def _call_endpoint(
        self,
        endpoint: Endpoint,
        body: Mapping[str, Any],
        headers: Mapping[str, str],
        model_id: str,
        stream: bool,
    ) -> Any:
        if stream:
            return await self._open_stream(endpoint, body, headers, model_id)
        return await self._post(endpoint, body, headers, model_id)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _wrap_transport_error(self, exc: httpx.HTTPError, url: str) -> NetworkError:
        detail = format_httpx_error(exc, url=url, timeout=self.settings.upstream.read_timeout)
        return NetworkError(f"Upstream request error: {detail}", is_timeout=isinstance(exc, httpx.TimeoutException))

    async def _post(
        self,
        endpoint: Endpoint,
        body: Mapping[str, Any],
        headers: Mapping[str, str],
        model_id: str,
    ) -> Any:
        url = endpoint.build_url(stream=False)
        try:
            response = await self.client.post(url, json=body, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise self._wrap_transport_error(exc, url) from exc

        if response.status_code >= 400:
            raise classify_upstream_error(
                response.status_code, response.text, response.headers, model_id
            )
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamFault(f"Upstream returned invalid JSON from {endpoint.name}", 502) from exc

    async def _open_stream(
        self,
        endpoint: Endpoint,
        body: Mapping[str, Any],
        headers: Mapping[str, str],
        model_id: str,
    ) -> _OpenStream:
        url = endpoint.build_url(stream=True)
        request = self.client.build_request("POST", url, json=body, headers=headers, timeout=self.timeout)
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise self._wrap_transport_error(exc, url) from exc

        if response.status_code >= 400:
            try:
                data = await response.aread()
            finally:
                await response.aclose()
            raise classify_upstream_error(
                response.status_code,
                data.decode("utf-8", errors="replace"),
                response.headers,
                model_id,
            )

        # Buffer the first data line to detect in-band errors before committing
        chunks = response.aiter_bytes()
        buffered: list[bytes] = []
        size = 0
        try:
            while size < STREAM_ERROR_CHECK_BUFFER_SIZE:
                try:
                    chunk = await chunks.__anext__()
                except StopAsyncIteration:
                    break
                if not chunk:
                    continue
                buffered.append(chunk)
                size += len(chunk)
                if b"\n" in chunk:
                    break
        except httpx.HTTPError as exc:
            await response.aclose()
            raise self._wrap_transport_error(exc, url) from exc

        sse_error = detect_sse_stream_error(b"".join(buffered))
        if sse_error is not None:
            await response.aclose()
            logger.warning(f"Detected SSE error in stream from {endpoint.name}: {sse_error}")
            raise classify_upstream_error(
                sse_error.status_code or 500,
                json.dumps({
                    "error": {
                        "message": sse_error.message,
                        "status": sse_error.status,
                        "details": sse_error.details or [],
                    }
                }),
                {},
                model_id,
            )

        logger.info(f"Streaming from {endpoint.name}, status {response.status_code}")
        return _OpenStream(response=response, chunks=chunks, buffered=buffered)

    async def _relay(
        self,
        opened: _OpenStream,
        adapter: CloudCodeToMessagesStreamAdapter,
        disconnect_checker: Optional[Callable[[], Awaitable[bool]]],
    ) -> AsyncGenerator[bytes, None]:
        async def upstream_bytes() -> AsyncIterator[bytes]:
            for chunk in opened.buffered:
                yield chunk
            async for chunk in opened.chunks:
                yield chunk

        try:
            async for event in adapter.adapt_stream(upstream_bytes()):
                yield event
                if disconnect_checker is not None and await disconnect_checker():
                    logger.info("Client disconnected; closing upstream stream")
                    return
        finally:
            await opened.aclose()
