"""Multi-account pool with sticky selection and rate-limit bookkeeping.

The pool decides which credential serves a request. It prefers the account a
session used before (the upstream's prompt cache is per account), falls back
to the least recently used available account, and tracks rate limits per
model and per account so the executor can fail over.

All methods are synchronous: there is no suspension point between reading
the state, deciding and writing it back. A re-entrant lock additionally makes
the pool safe to drive from threads.

Mutating methods return True when the change should be persisted.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from ..core.cache import BoundedTTLCache
from ..fingerprint.generator import generate_fingerprint
from .models import Account, ModelRateLimit

logger = logging.getLogger("cloudcode-proxy")

DEFAULT_COOLDOWN_MS = 60_000
DEFAULT_STICKY_WAIT_THRESHOLD_MS = 120_000
DEFAULT_SESSION_AFFINITY_CAPACITY = 10_000


def _now_ms() -> int:
    return int(time.time() * 1000)


def format_duration(ms: int) -> str:
    seconds = max(0, int(ms) // 1000)
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{minutes}m{seconds}s"
    return f"{seconds}s"


@dataclass
class AccountSelection:
    """Result of ``AccountPool.select_account``.

    ``account`` is None when nothing can serve the request; ``wait_ms`` is
    then the time until the soonest account frees up. A sticky account that
    is briefly rate limited is returned together with a positive ``wait_ms``.
    """

    account: Optional[Account]
    wait_ms: int = 0
    sticky: bool = False


class AccountPool:
    """Owns the accounts and all selection and rate-limit state.

    Args:
        accounts: Initial accounts.
        sticky_wait_threshold_ms: A sticky account limited for less than this
            is kept (the caller waits) instead of switching accounts.
        default_cooldown_ms: Rate-limit duration when the upstream gives none.
        session_affinity_capacity: Max remembered session -> account bindings.
        session_affinity_ttl_seconds: Age after which a binding is forgotten.
        clock: Returns epoch milliseconds (injectable for tests).
        assign_fingerprints: Give accounts without a fingerprint a new one.
    """

    def __init__(
        self,
        accounts: Optional[Iterable[Account]] = None,
        *,
        sticky_wait_threshold_ms: int = DEFAULT_STICKY_WAIT_THRESHOLD_MS,
        default_cooldown_ms: int = DEFAULT_COOLDOWN_MS,
        session_affinity_capacity: int = DEFAULT_SESSION_AFFINITY_CAPACITY,
        session_affinity_ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], int]] = None,
        assign_fingerprints: bool = True,
    ) -> None:
        self._lock = threading.RLock()
        self._clock = clock or _now_ms
        self.sticky_wait_threshold_ms = sticky_wait_threshold_ms
        self.default_cooldown_ms = default_cooldown_ms
        self._assign_fingerprints = assign_fingerprints
        self._accounts: dict[str, Account] = {}
        self._sticky: BoundedTTLCache[str, str] = BoundedTTLCache(
            max_entries=session_affinity_capacity,
            ttl_seconds=session_affinity_ttl_seconds,
        )
        for account in accounts or []:
            self.add_account(account)

    # ------------------------------------------------------------------
    # Account set
    # ------------------------------------------------------------------

    @property
    def accounts(self) -> list[Account]:
        with self._lock:
            return list(self._accounts.values())

    def get_account(self, email: str) -> Optional[Account]:
        with self._lock:
            return self._accounts.get(email)

    def add_account(self, account: Account) -> bool:
        """Add an account, or replace the credentials of an existing one.

        Re-adding a known email counts as re-authorization: the stored
        rate-limit state is kept, the invalid flag is cleared.
        """
        with self._lock:
            if account.fingerprint is None and self._assign_fingerprints:
                account.fingerprint = generate_fingerprint()
            if account.added_at is None:
                account.added_at = self._clock()

            existing = self._accounts.get(account.email)
            if existing is not None:
                account.is_rate_limited = existing.is_rate_limited
                account.rate_limit_reset_time = existing.rate_limit_reset_time
                account.model_rate_limits = existing.model_rate_limits
                account.last_used = existing.last_used
                account.fingerprint = existing.fingerprint or account.fingerprint
                logger.info(f"Updated credentials for account: {account.email}")
            else:
                logger.info(f"Added account: {account.email} ({account.source.value})")
            self._accounts[account.email] = account
            return True

    def remove_account(self, email: str) -> bool:
        with self._lock:
            if self._accounts.pop(email, None) is None:
                return False
            for session_id in list(self._sticky.keys()):
                if self._sticky.get(session_id) == email:
                    self._sticky.pop(session_id)
            logger.info(f"Removed account: {email}")
            return True

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def _is_usable(self, account: Account) -> bool:
        return account.enabled and not account.is_invalid

    def _globally_limited(self, account: Account, now: int) -> bool:
        if not account.is_rate_limited:
            return False
        reset = account.rate_limit_reset_time
        return reset is None or reset > now

    def _is_available(self, account: Account, model_id: Optional[str], now: int) -> bool:
        return (
            self._is_usable(account)
            and not self._globally_limited(account, now)
            and not account.is_model_limited(model_id, now)
        )

    def _wait_for(self, account: Account, model_id: Optional[str], now: int) -> Optional[int]:
        """Time until ``account`` is free for ``model_id``; None if unknown."""
        resets: list[int] = []
        if self._globally_limited(account, now):
            if account.rate_limit_reset_time is None:
                return None
            resets.append(account.rate_limit_reset_time)
        if account.is_model_limited(model_id, now):
            resets.append(account.model_rate_limits[model_id].reset_time or now)
        if not resets:
            return 0
        return max(resets) - now

    def get_available_accounts(self, model_id: Optional[str] = None) -> list[Account]:
        with self._lock:
            now = self._clock()
            return [a for a in self._accounts.values() if self._is_available(a, model_id, now)]

    def get_invalid_accounts(self) -> list[Account]:
        with self._lock:
            return [a for a in self._accounts.values() if a.is_invalid]

    def has_usable_accounts(self) -> bool:
        with self._lock:
            return any(self._is_usable(a) for a in self._accounts.values())

    def is_all_rate_limited(self, model_id: Optional[str] = None) -> bool:
        """True when no usable account can serve ``model_id`` right now."""
        with self._lock:
            now = self._clock()
            usable = [a for a in self._accounts.values() if self._is_usable(a)]
            if not usable:
                return True
            return not any(self._is_available(a, model_id, now) for a in usable)

    def get_min_wait_time_ms(self, model_id: Optional[str] = None) -> int:
        """Milliseconds until the soonest account frees up.

        0 when an account is available now; the configured default cooldown
        when no reset time is known.
        """
        with self._lock:
            if not self.is_all_rate_limited(model_id):
                return 0
            now = self._clock()
            soonest: Optional[int] = None
            soonest_email: Optional[str] = None
            for account in self._accounts.values():
                if not self._is_usable(account):
                    continue
                wait = self._wait_for(account, model_id, now)
                if wait is not None and wait > 0 and (soonest is None or wait < soonest):
                    soonest, soonest_email = wait, account.email
            if soonest is None:
                return self.default_cooldown_ms
            logger.info(f"Shortest wait: {format_duration(soonest)} (account: {soonest_email})")
            return soonest

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_account(
        self,
        session_id: Optional[str] = None,
        model_id: Optional[str] = None,
        allow_wait: bool = True,
    ) -> AccountSelection:
        """Pick the account for one attempt.

        Order of preference:
        1. The session's sticky account, if it is available.
        2. The sticky account anyway, with a wait, if its limit ends within
           ``sticky_wait_threshold_ms``.
        3. The least recently used available account (becomes sticky).
        4. Nothing: ``account`` is None and ``wait_ms`` is the minimum wait.

        With ``allow_wait=False`` step 2 is skipped, for failover right after
        the sticky account hit a rate limit.
        """
        with self._lock:
            now = self._clock()

            sticky_email = self._sticky.get(session_id) if session_id else None
            sticky = self._accounts.get(sticky_email) if sticky_email else None
            if sticky is not None and self._is_usable(sticky):
                if self._is_available(sticky, model_id, now):
                    sticky.last_used = now
                    logger.debug(f"Using sticky account {sticky.email} for session {session_id[:8]}")
                    return AccountSelection(account=sticky, sticky=True)
                wait = self._wait_for(sticky, model_id, now)
                if allow_wait and wait is not None and 0 < wait < self.sticky_wait_threshold_ms:
                    logger.info(
                        f"Sticky account {sticky.email} rate limited, waiting {format_duration(wait)}"
                    )
                    return AccountSelection(account=sticky, wait_ms=wait, sticky=True)

            available = [a for a in self._accounts.values() if self._is_available(a, model_id, now)]
            if not available:
                return AccountSelection(account=None, wait_ms=self.get_min_wait_time_ms(model_id))

            chosen = min(available, key=lambda a: a.last_used or 0)
            chosen.last_used = now
            if session_id:
                self._sticky.put(session_id, chosen.email)
            logger.debug(f"Selected account {chosen.email} (least recently used)")
            return AccountSelection(account=chosen)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def mark_rate_limited(
        self,
        email: str,
        reset_ms: Optional[int] = None,
        model_id: Optional[str] = None,
    ) -> bool:
        """Mark an account rate limited for ``reset_ms`` (default cooldown if None).

        With ``model_id`` only that model is limited on the account.
        """
        with self._lock:
            account = self._accounts.get(email)
            if account is None:
                return False
            cooldown_ms = reset_ms if reset_ms and reset_ms > 0 else self.default_cooldown_ms
            reset_time = self._clock() + cooldown_ms

            if model_id:
                account.model_rate_limits[model_id] = ModelRateLimit(
                    is_rate_limited=True, reset_time=reset_time
                )
                logger.warning(
                    f"Rate limited: {email} (model: {model_id}). "
                    f"Available in {format_duration(cooldown_ms)}"
                )
            else:
                account.is_rate_limited = True
                account.rate_limit_reset_time = reset_time
                logger.warning(f"Rate limited: {email}. Available in {format_duration(cooldown_ms)}")
            return True

    def mark_invalid(self, email: str, reason: str = "Unknown error") -> bool:
        """Mark an account as needing re-authorization. Stays until ``mark_valid``."""
        with self._lock:
            account = self._accounts.get(email)
            if account is None:
                return False
            account.is_invalid = True
            account.invalid_reason = reason
            account.invalid_at = self._clock()
            logger.error(f"Account INVALID: {email}. Reason: {reason}")
            return True

    def mark_valid(self, email: str) -> bool:
        with self._lock:
            account = self._accounts.get(email)
            if account is None or not account.is_invalid:
                return False
            account.is_invalid = False
            account.invalid_reason = None
            account.invalid_at = None
            logger.info(f"Account re-authorized: {email}")
            return True

    def set_enabled(self, email: str, enabled: bool) -> bool:
        with self._lock:
            account = self._accounts.get(email)
            if account is None or account.enabled == enabled:
                return False
            account.enabled = enabled
            logger.info(f"Account {'enabled' if enabled else 'disabled'}: {email}")
            return True

    def clear_expired(self) -> int:
        """Clear rate limits whose reset time has passed. Returns how many."""
        with self._lock:
            now = self._clock()
            cleared = 0
            for account in self._accounts.values():
                reset = account.rate_limit_reset_time
                if account.is_rate_limited and reset is not None and reset <= now:
                    account.is_rate_limited = False
                    account.rate_limit_reset_time = None
                    cleared += 1
                    logger.info(f"Rate limit expired for: {account.email}")
                for model_id, limit in account.model_rate_limits.items():
                    if limit.is_rate_limited and (limit.reset_time or 0) <= now:
                        limit.is_rate_limited = False
                        limit.reset_time = None
                        cleared += 1
                        logger.info(f"Rate limit expired for: {account.email} (model: {model_id})")
            return cleared

    def reset_all(self) -> bool:
        """Clear every rate limit, for an optimistic retry."""
        with self._lock:
            for account in self._accounts.values():
                account.is_rate_limited = False
                account.rate_limit_reset_time = None
                for model_id in list(account.model_rate_limits):
                    account.model_rate_limits[model_id] = ModelRateLimit()
            logger.warning("Reset all rate limits for optimistic retry")
            return True

    def regenerate_fingerprint(self, email: str) -> bool:
        with self._lock:
            account = self._accounts.get(email)
            if account is None:
                return False
            account.fingerprint = generate_fingerprint()
            logger.info(f"Regenerated device fingerprint for: {email}")
            return True

    def regenerate_all_fingerprints(self) -> bool:
        with self._lock:
            for email in self._accounts:
                self.regenerate_fingerprint(email)
            return bool(self._accounts)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _status_of(self, account: Account, now: int) -> str:
        if not account.enabled:
            return "disabled"
        if account.is_invalid:
            return "invalid"
        if self._globally_limited(account, now):
            return "rate_limited"
        return "ok"

    def snapshot(self) -> list[dict[str, Any]]:
        """Status rows for every account, without credentials."""
        with self._lock:
            now = self._clock()
            rows = []
            for account in self._accounts.values():
                rows.append({
                    "email": account.email,
                    "source": account.source.value,
                    "auth_type": account.auth_type,
                    "enabled": account.enabled,
                    "status": self._status_of(account, now),
                    "rate_limit_reset_time": account.rate_limit_reset_time,
                    "model_rate_limits": {
                        model_id: limit.reset_time
                        for model_id, limit in account.model_rate_limits.items()
                        if limit.is_rate_limited and (limit.reset_time or 0) > now
                    },
                    "invalid_reason": account.invalid_reason,
                    "last_used": account.last_used,
                })
            return rows
