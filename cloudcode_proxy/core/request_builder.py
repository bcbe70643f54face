"""Final Cloud Code request payloads and headers.

The translated Gemini request is wrapped in the Cloud Code envelope
(project, model, request, userAgent, requestType, requestId) and the
system instruction is prefixed with the client identity text.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Mapping, Optional

from ..accounts.models import Account, DeviceFingerprint
from ..fingerprint.generator import build_fingerprint_headers
from .models import AuthType, ModelFamily, get_model_family, is_thinking_model, resolve_upstream_model

logger = logging.getLogger("cloudcode-proxy")

INTERLEAVED_THINKING_BETA = "interleaved-thinking-2025-05-14"

ANTIGRAVITY_HEADERS = {
    "User-Agent": "antigravity/1.11.5 linux/x64",
    "X-Goog-Api-Client": "google-cloud-sdk vscode_cloudshelleditor/0.1",
    "Client-Metadata": '{"ideType":"IDE_UNSPECIFIED","platform":"PLATFORM_UNSPECIFIED","pluginType":"GEMINI"}',
}


def build_system_parts(
    request_system: Optional[Mapping[str, Any]],
    identity_instruction: Optional[str],
) -> list[dict[str, str]]:
    """System parts: identity text, its ignore-wrapped copy, then the client's."""
    parts: list[dict[str, str]] = []
    if identity_instruction:
        parts.append({"text": identity_instruction})
        parts.append({"text": f"Please ignore the following [ignore]{identity_instruction}[/ignore]"})
    for part in (request_system or {}).get("parts") or []:
        if part.get("text"):
            parts.append({"text": part["text"]})
    return parts


def build_cloudcode_request(
    google_request: Mapping[str, Any],
    model: str,
    project_id: str,
    *,
    auth_type: str = AuthType.ANTIGRAVITY.value,
    session_id: Optional[str] = None,
    model_aliases: Optional[Mapping[str, Mapping[str, str]]] = None,
    system_instruction: Optional[str] = None,
) -> dict[str, Any]:
    """Wrap a translated Gemini request for the Cloud Code API.

    Args:
        google_request: Output of ``messages_to_cloudcode``
        model: Client model name (``gc/`` prefix allowed)
        project_id: Cloud Code project of the serving account
        auth_type: Credential type of the serving account
        session_id: Session id attached for upstream cache continuity
        model_aliases: Per-auth-type alias tables
        system_instruction: Identity text placed before the client's system prompt

    Returns:
        The JSON body for ``generateContent``/``streamGenerateContent``
    """
    request = dict(google_request)
    if session_id:
        request["sessionId"] = session_id

    system_parts = build_system_parts(request.get("systemInstruction"), system_instruction)
    if system_parts:
        request["systemInstruction"] = {"role": "user", "parts": system_parts}
    else:
        request.pop("systemInstruction", None)

    return {
        "project": project_id,
        "model": resolve_upstream_model(model, auth_type, model_aliases),
        "request": request,
        "userAgent": "gemini-cli" if auth_type == AuthType.GEMINI_CLI.value else "antigravity",
        "requestType": "agent",
        "requestId": f"agent-{uuid.uuid4()}",
    }


def build_headers(
    token: str,
    model: str,
    *,
    stream: bool = False,
    auth_type: str = AuthType.ANTIGRAVITY.value,
    fingerprint: Optional[DeviceFingerprint] = None,
    gemini_cli_user_agent: Optional[str] = None,
) -> dict[str, str]:
    """Build headers for a Cloud Code request.

    Antigravity credentials present the account's device fingerprint; Gemini
    CLI credentials present the CLI's user agent only.
    """
    if auth_type == AuthType.GEMINI_CLI.value:
        base_headers = {"User-Agent": gemini_cli_user_agent or "GeminiCLI"}
    else:
        base_headers = {**ANTIGRAVITY_HEADERS, **build_fingerprint_headers(fingerprint)}

    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
        **base_headers,
    }

    if get_model_family(model) is ModelFamily.CLAUDE and is_thinking_model(model):
        headers["anthropic-beta"] = INTERLEAVED_THINKING_BETA

    if stream:
        headers["Accept"] = "text/event-stream"

    return headers


def build_request_for_account(
    google_request: Mapping[str, Any],
    model: str,
    account: Account,
    token: str,
    project_id: str,
    *,
    stream: bool = False,
    session_id: Optional[str] = None,
    model_aliases: Optional[Mapping[str, Mapping[str, str]]] = None,
    system_instruction: Optional[str] = None,
    gemini_cli_user_agent: Optional[str] = None,
) -> tuple[dict[str, Any], dict[str, str]]:
    """Payload and headers for one attempt on ``account``."""
    payload = build_cloudcode_request(
        google_request,
        model,
        project_id,
        auth_type=account.auth_type,
        session_id=session_id,
        model_aliases=model_aliases,
        system_instruction=system_instruction,
    )
    headers = build_headers(
        token,
        payload["model"],
        stream=stream,
        auth_type=account.auth_type,
        fingerprint=account.fingerprint,
        gemini_cli_user_agent=gemini_cli_user_agent,
    )
    return payload, headers
