"""Tests for the thinking-signature cache and fingerprints."""

from cloudcode_proxy.core.signatures import (
    SKIP_SIGNATURE_SENTINEL,
    SignatureCache,
    is_valid_signature,
    thinking_fingerprint,
    tool_call_fingerprint,
)

from conftest import SIGNATURE_A, SIGNATURE_B


class TestFingerprints:
    """Tests for content fingerprints."""

    def test_thinking_fingerprint_is_deterministic(self):
        """Test that the same inputs give the same fingerprint."""
        assert thinking_fingerprint("plan", 0, "s1") == thinking_fingerprint("plan", 0, "s1")

    def test_thinking_fingerprint_depends_on_every_input(self):
        """Test that text, ordinal and session all change the fingerprint."""
        base = thinking_fingerprint("plan", 0, "s1")
        assert thinking_fingerprint("plan!", 0, "s1") != base
        assert thinking_fingerprint("plan", 1, "s1") != base
        assert thinking_fingerprint("plan", 0, "s2") != base

    def test_tool_and_thinking_fingerprints_do_not_collide(self):
        """Test that the two key spaces are distinct."""
        assert tool_call_fingerprint("toolu_1", "s1") != thinking_fingerprint("toolu_1", 0, "s1")

    def test_fingerprint_is_sha256_hex(self):
        """Test the fingerprint format."""
        value = tool_call_fingerprint("toolu_1", "s1")
        assert len(value) == 64
        int(value, 16)


class TestSignatureCache:
    """Tests for SignatureCache."""

    def test_put_and_get(self):
        """Test storing and retrieving a signature."""
        cache = SignatureCache()
        key = thinking_fingerprint("plan", 0, "s1")
        cache.put(key, SIGNATURE_A)
        assert cache.get(key) == SIGNATURE_A

    def test_short_signatures_are_ignored(self):
        """Test that placeholder-length signatures are not cached."""
        cache = SignatureCache()
        cache.put("key", "short")
        assert cache.get("key") is None
        assert len(cache) == 0

    def test_capacity_evicts_oldest(self):
        """Test LRU eviction beyond capacity."""
        cache = SignatureCache(capacity=1)
        cache.put("first", SIGNATURE_A)
        cache.put("second", SIGNATURE_B)
        assert cache.get("first") is None
        assert cache.get("second") == SIGNATURE_B

    def test_ttl_expiry(self):
        """Test that signatures expire after the TTL."""
        now = [0.0]
        cache = SignatureCache(ttl_seconds=100, clock=lambda: now[0])
        cache.put("key", SIGNATURE_A)
        now[0] = 101
        assert cache.get("key") is None


def test_is_valid_signature():
    """Test signature validity rules."""
    assert is_valid_signature(SIGNATURE_A)
    assert not is_valid_signature("")
    assert not is_valid_signature(None)
    assert not is_valid_signature(12345)
    assert not is_valid_signature(SKIP_SIGNATURE_SENTINEL)
