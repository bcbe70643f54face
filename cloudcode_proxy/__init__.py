"""cloudcode-proxy - Anthropic Messages gateway for Google Cloud Code

Accepts Anthropic Messages requests, runs them against the Cloud Code
``v1internal`` API behind a pool of rotating accounts, and translates the
(possibly streamed) responses back.

This module provides:
- Gateway: Composition root used by the inbound HTTP layer
- AccountPool: Sticky, rate-limit aware account selection
- Format conversion between Messages and Gemini content
- Typed settings loaded from YAML with environment substitution

Example:
    >>> from cloudcode_proxy import Gateway, setup_logging
    >>> setup_logging("INFO")
    >>> gateway = Gateway.from_config_file()
    >>> response = await gateway.handle_messages({"model": "claude-sonnet-4-5", ...})
"""

from .accounts import Account, AccountPool, CredentialSource, InMemoryCredentialStore
from .config_loader import load_config
from .core import ProxyError
from .gateway import Gateway
from .logging import setup_logging
from .settings import GatewaySettings, load_settings

__all__ = [
    "Account",
    "AccountPool",
    "CredentialSource",
    "Gateway",
    "GatewaySettings",
    "InMemoryCredentialStore",
    "ProxyError",
    "load_config",
    "load_settings",
    "setup_logging",
]
