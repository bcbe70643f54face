"""Credential store interface used to persist pool state."""

from __future__ import annotations

import copy
import logging
import threading
from typing import Iterable, Optional, Protocol

from .models import Account

logger = logging.getLogger("cloudcode-proxy")


class CredentialStore(Protocol):
    """Where accounts are loaded from and saved to."""

    def list_accounts(self) -> list[Account]:
        ...

    def upsert_account(self, account: Account) -> None:
        ...

    def remove_account(self, email: str) -> bool:
        ...


class InMemoryCredentialStore:
    """Process-local store. Keeps copies so callers cannot mutate stored state."""

    def __init__(self, accounts: Optional[Iterable[Account]] = None) -> None:
        self._lock = threading.Lock()
        self._accounts: dict[str, Account] = {}
        for account in accounts or []:
            self._accounts[account.email] = copy.deepcopy(account)

    def list_accounts(self) -> list[Account]:
        with self._lock:
            return [copy.deepcopy(a) for a in self._accounts.values()]

    def upsert_account(self, account: Account) -> None:
        with self._lock:
            self._accounts[account.email] = copy.deepcopy(account)
        logger.debug(f"Stored account state for {account.email}")

    def remove_account(self, email: str) -> bool:
        with self._lock:
            return self._accounts.pop(email, None) is not None
