"""Typed gateway settings built from the YAML configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .config_loader import load_config
from .core.exceptions import ConfigurationError
from .core.models import DEFAULT_MODEL_ALIASES
from .messages.schema import DEFAULT_HINTED_KEYWORDS, DEFAULT_UNSUPPORTED_KEYWORDS

logger = logging.getLogger("cloudcode-proxy")

DEFAULT_ENDPOINTS = [
    "https://daily-cloudcode-pa.sandbox.googleapis.com",
    "https://autopush-cloudcode-pa.sandbox.googleapis.com",
    "https://cloudcode-pa.googleapis.com",
]

DEFAULT_LOAD_CODE_ASSIST_ENDPOINTS = [
    "https://cloudcode-pa.googleapis.com",
    "https://daily-cloudcode-pa.sandbox.googleapis.com",
]

DEFAULT_PROJECT_ID = "rising-fact-p41fc"

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are Antigravity, a powerful agentic AI coding assistant designed by the "
    "Google Deepmind team working on Advanced Agentic Coding. You are pair "
    "programming with a USER to solve their coding task. The task may require "
    "creating a new codebase, modifying or debugging an existing codebase, or "
    "simply answering a question."
)

DEFAULT_TOKEN_URL = "https://oauth2.googleapis.com/token"


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")
    return value


def _str_list(value: Any, name: str) -> list[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigurationError(f"Config value '{name}' must be a list of strings")
    return list(value)


@dataclass
class UpstreamSettings:
    endpoints: list[str] = field(default_factory=lambda: list(DEFAULT_ENDPOINTS))
    load_code_assist_endpoints: list[str] = field(
        default_factory=lambda: list(DEFAULT_LOAD_CODE_ASSIST_ENDPOINTS)
    )
    default_project_id: str = DEFAULT_PROJECT_ID
    connect_timeout: float = 10.0
    read_timeout: float = 300.0
    model_aliases: dict[str, dict[str, str]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_MODEL_ALIASES.items()}
    )
    system_instruction: Optional[str] = DEFAULT_SYSTEM_INSTRUCTION
    gemini_cli_user_agent: str = "GeminiCLI/0.1.5 (linux; x64)"
    onboard_max_attempts: int = 5
    onboard_poll_interval: float = 2.0

    @classmethod
    def from_config(cls, data: Mapping[str, Any]) -> "UpstreamSettings":
        settings = cls()
        if "endpoints" in data:
            settings.endpoints = _str_list(data["endpoints"], "upstream.endpoints")
        if "load_code_assist_endpoints" in data:
            settings.load_code_assist_endpoints = _str_list(
                data["load_code_assist_endpoints"], "upstream.load_code_assist_endpoints"
            )
        if not settings.endpoints:
            raise ConfigurationError("upstream.endpoints must not be empty")
        settings.default_project_id = str(data.get("default_project_id", settings.default_project_id))
        settings.connect_timeout = float(data.get("connect_timeout", settings.connect_timeout))
        settings.read_timeout = float(data.get("read_timeout", settings.read_timeout))
        aliases = data.get("model_aliases")
        if isinstance(aliases, Mapping):
            for auth_type, table in aliases.items():
                if isinstance(table, Mapping):
                    settings.model_aliases.setdefault(str(auth_type), {}).update(
                        {str(k): str(v) for k, v in table.items()}
                    )
        if "system_instruction" in data:
            settings.system_instruction = data["system_instruction"] or None
        settings.gemini_cli_user_agent = str(
            data.get("gemini_cli_user_agent", settings.gemini_cli_user_agent)
        )
        settings.onboard_max_attempts = int(data.get("onboard_max_attempts", settings.onboard_max_attempts))
        settings.onboard_poll_interval = float(
            data.get("onboard_poll_interval", settings.onboard_poll_interval)
        )
        return settings


@dataclass
class OAuthClient:
    client_id: str = ""
    client_secret: str = ""


@dataclass
class OAuthSettings:
    token_url: str = DEFAULT_TOKEN_URL
    # auth_type -> OAuth client used to refresh that type's tokens
    clients: dict[str, OAuthClient] = field(default_factory=dict)

    def client_for(self, auth_type: str) -> OAuthClient:
        client = self.clients.get(auth_type)
        if client is None:
            raise ConfigurationError(f"No OAuth client configured for auth type '{auth_type}'")
        return client

    @classmethod
    def from_config(cls, data: Mapping[str, Any]) -> "OAuthSettings":
        settings = cls(token_url=str(data.get("token_url", DEFAULT_TOKEN_URL)))
        clients = data.get("clients") or {}
        if not isinstance(clients, Mapping):
            raise ConfigurationError("oauth.clients must be a mapping")
        for auth_type, client in clients.items():
            if not isinstance(client, Mapping):
                raise ConfigurationError(f"oauth.clients.{auth_type} must be a mapping")
            settings.clients[str(auth_type)] = OAuthClient(
                client_id=str(client.get("client_id", "")),
                client_secret=str(client.get("client_secret", "")),
            )
        return settings


@dataclass
class PoolSettings:
    sticky_wait_threshold_ms: int = 120_000
    default_cooldown_ms: int = 60_000
    max_wait_before_error_ms: int = 120_000
    session_affinity_capacity: int = 10_000

    @classmethod
    def from_config(cls, data: Mapping[str, Any]) -> "PoolSettings":
        defaults = cls()
        return cls(
            sticky_wait_threshold_ms=int(data.get("sticky_wait_threshold_ms", defaults.sticky_wait_threshold_ms)),
            default_cooldown_ms=int(data.get("default_cooldown_ms", defaults.default_cooldown_ms)),
            max_wait_before_error_ms=int(data.get("max_wait_before_error_ms", defaults.max_wait_before_error_ms)),
            session_affinity_capacity=int(data.get("session_affinity_capacity", defaults.session_affinity_capacity)),
        )


@dataclass
class RetrySettings:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.25
    # Cap for the single wait when every account is rate limited
    max_wait_ms: int = 120_000

    @classmethod
    def from_config(cls, data: Mapping[str, Any]) -> "RetrySettings":
        defaults = cls()
        settings = cls(
            max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
            initial_delay=float(data.get("initial_delay", defaults.initial_delay)),
            max_delay=float(data.get("max_delay", defaults.max_delay)),
            jitter=float(data.get("jitter", defaults.jitter)),
            max_wait_ms=int(data.get("max_wait_ms", defaults.max_wait_ms)),
        )
        if settings.max_attempts < 1:
            raise ConfigurationError("retry.max_attempts must be at least 1")
        return settings


@dataclass
class CacheSettings:
    signature_capacity: int = 10_000
    signature_ttl_seconds: float = 7200.0
    token_ttl_seconds: float = 300.0
    session_affinity_ttl_seconds: Optional[float] = None

    @classmethod
    def from_config(cls, data: Mapping[str, Any]) -> "CacheSettings":
        defaults = cls()
        affinity_ttl = data.get("session_affinity_ttl_seconds", defaults.session_affinity_ttl_seconds)
        return cls(
            signature_capacity=int(data.get("signature_capacity", defaults.signature_capacity)),
            signature_ttl_seconds=float(data.get("signature_ttl_seconds", defaults.signature_ttl_seconds)),
            token_ttl_seconds=float(data.get("token_ttl_seconds", defaults.token_ttl_seconds)),
            session_affinity_ttl_seconds=float(affinity_ttl) if affinity_ttl is not None else None,
        )


@dataclass
class SchemaSettings:
    unsupported_keywords: list[str] = field(
        default_factory=lambda: sorted(DEFAULT_UNSUPPORTED_KEYWORDS)
    )
    hinted_keywords: list[str] = field(default_factory=lambda: sorted(DEFAULT_HINTED_KEYWORDS))

    @classmethod
    def from_config(cls, data: Mapping[str, Any]) -> "SchemaSettings":
        settings = cls()
        if "unsupported_keywords" in data:
            settings.unsupported_keywords = _str_list(
                data["unsupported_keywords"], "schema.unsupported_keywords"
            )
        if "hinted_keywords" in data:
            settings.hinted_keywords = _str_list(data["hinted_keywords"], "schema.hinted_keywords")
        return settings


@dataclass
class GatewaySettings:
    """All gateway settings, grouped by concern."""

    upstream: UpstreamSettings = field(default_factory=UpstreamSettings)
    oauth: OAuthSettings = field(default_factory=OAuthSettings)
    pool: PoolSettings = field(default_factory=PoolSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    caches: CacheSettings = field(default_factory=CacheSettings)
    schema: SchemaSettings = field(default_factory=SchemaSettings)
    accounts: list[dict[str, Any]] = field(default_factory=list)
    log_level: str = "INFO"

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "GatewaySettings":
        """Build settings from a parsed config dict. Missing sections use defaults.

        Raises:
            ConfigurationError: If a section has the wrong shape.
        """
        accounts = config.get("accounts") or []
        if not isinstance(accounts, list) or not all(isinstance(a, Mapping) for a in accounts):
            raise ConfigurationError("Config section 'accounts' must be a list of mappings")
        logging_section = _section(config, "logging")

        return cls(
            upstream=UpstreamSettings.from_config(_section(config, "upstream")),
            oauth=OAuthSettings.from_config(_section(config, "oauth")),
            pool=PoolSettings.from_config(_section(config, "pool")),
            retry=RetrySettings.from_config(_section(config, "retry")),
            caches=CacheSettings.from_config(_section(config, "caches")),
            schema=SchemaSettings.from_config(_section(config, "schema")),
            accounts=[dict(a) for a in accounts],
            log_level=str(logging_section.get("level", "INFO")),
        )


def load_settings(path: Optional[str] = None, env_path: Optional[str] = None) -> GatewaySettings:
    """Load the YAML config and turn it into ``GatewaySettings``."""
    return GatewaySettings.from_config(load_config(path, env_path=env_path))
