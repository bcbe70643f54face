"""Device fingerprints presented to the upstream for each account.

Each account carries its own client identity (user agent, SDK client, client
metadata, quota user and device id) so that accounts sharing one gateway do
not look like a single device.
"""

from __future__ import annotations

import hashlib
import json
import logging
import platform
import random
import secrets
import socket
import sys
import time
import uuid
from typing import Optional

from ..accounts.models import DeviceFingerprint

logger = logging.getLogger("cloudcode-proxy")

OS_VERSIONS: dict[str, list[str]] = {
    "darwin": ["10.15.7", "11.6.8", "12.6.3", "13.5.2", "14.2.1", "14.5"],
    "win32": ["10.0.19041", "10.0.19042", "10.0.19043", "10.0.22000", "10.0.22621", "10.0.22631"],
    "linux": ["5.15.0", "5.19.0", "6.1.0", "6.2.0", "6.5.0", "6.6.0"],
}

ARCHITECTURES = ["x64", "arm64"]

ANTIGRAVITY_VERSIONS = ["1.10.0", "1.10.5", "1.11.0", "1.11.2", "1.11.5", "1.12.0", "1.12.1"]

IDE_TYPES = [
    "IDE_UNSPECIFIED",
    "VSCODE",
    "INTELLIJ",
    "ANDROID_STUDIO",
    "CLOUD_SHELL_EDITOR",
]

PLATFORMS = [
    "PLATFORM_UNSPECIFIED",
    "WINDOWS",
    "MACOS",
    "LINUX",
]

SDK_CLIENTS = [
    "google-cloud-sdk vscode_cloudshelleditor/0.1",
    "google-cloud-sdk vscode/1.86.0",
    "google-cloud-sdk vscode/1.87.0",
    "google-cloud-sdk intellij/2024.1",
    "google-cloud-sdk android-studio/2024.1",
    "gcloud-python/1.2.0 grpc-google-iam-v1/0.12.6",
]

DEFAULT_CLIENT_VERSION = "1.11.5"

_PLATFORM_NAMES = {"darwin": "MACOS", "win32": "WINDOWS", "linux": "LINUX"}
_ARCH_NAMES = {"x86_64": "x64", "amd64": "x64", "aarch64": "arm64", "arm64": "arm64"}


def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_fingerprint(rng: Optional[random.Random] = None) -> DeviceFingerprint:
    """Generate a random but internally consistent device fingerprint.

    Args:
        rng: Random source for the cosmetic choices (injectable for tests).
            Device id, session token and quota user always come from a
            cryptographic source.
    """
    rng = rng or random.Random()
    os_name = rng.choice(sorted(OS_VERSIONS))
    arch = rng.choice(ARCHITECTURES)
    version = rng.choice(ANTIGRAVITY_VERSIONS)

    return DeviceFingerprint(
        device_id=str(uuid.uuid4()),
        session_token=secrets.token_hex(16),
        user_agent=f"antigravity/{version} {os_name}/{arch}",
        api_client=rng.choice(SDK_CLIENTS),
        client_metadata={
            "ideType": rng.choice(IDE_TYPES),
            "platform": _PLATFORM_NAMES.get(os_name) or rng.choice(PLATFORMS),
            "pluginType": "GEMINI",
            "osVersion": rng.choice(OS_VERSIONS[os_name]),
            "arch": arch,
        },
        quota_user=f"device-{secrets.token_hex(8)}",
        created_at=_now_ms(),
    )


def collect_current_fingerprint() -> DeviceFingerprint:
    """Fingerprint describing the machine the gateway runs on."""
    os_name = sys.platform if sys.platform in _PLATFORM_NAMES else sys.platform.rstrip("0123456789")
    machine = platform.machine().lower()
    arch = _ARCH_NAMES.get(machine, machine or "x64")
    hostname_digest = hashlib.sha256(socket.gethostname().encode("utf-8")).hexdigest()

    return DeviceFingerprint(
        device_id=str(uuid.uuid4()),
        session_token=secrets.token_hex(16),
        user_agent=f"antigravity/{DEFAULT_CLIENT_VERSION} {os_name}/{arch}",
        api_client=SDK_CLIENTS[0],
        client_metadata={
            "ideType": "VSCODE",
            "platform": _PLATFORM_NAMES.get(os_name, "PLATFORM_UNSPECIFIED"),
            "pluginType": "GEMINI",
            "osVersion": platform.release(),
            "arch": arch,
        },
        quota_user=f"device-{hostname_digest[:16]}",
        created_at=_now_ms(),
    )


def build_fingerprint_headers(fingerprint: Optional[DeviceFingerprint]) -> dict[str, str]:
    """HTTP headers that present ``fingerprint`` to the upstream."""
    if fingerprint is None:
        return {}

    return {
        "User-Agent": fingerprint.user_agent,
        "X-Goog-Api-Client": fingerprint.api_client,
        "Client-Metadata": json.dumps(fingerprint.client_metadata, separators=(",", ":")),
        "X-Goog-QuotaUser": fingerprint.quota_user,
        "X-Client-Device-Id": fingerprint.device_id,
    }
