"""
Unit tests for request fingerprinting.

Tests determinism, sensitivity to parameters and file content/order.
"""

import base64

import pytest

from media_guard.core.fingerprint import (
    FingerprintError,
    InputFile,
    compute_file_hashes,
    compute_fingerprint,
    content_hash,
    pending_key,
    result_key,
    upload_key,
)

ENDPOINT = "fal-ai/flux/schnell"


class TestInputFile:
    """Test InputFile validation."""

    def test_requires_exactly_one_source(self):
        with pytest.raises(ValueError, match="exactly one"):
            InputFile()
        with pytest.raises(ValueError, match="exactly one"):
            InputFile(url="https://x/a.png", data=b"abc")

    def test_base64_content_is_decoded(self):
        encoded = base64.b64encode(b"hello").decode("ascii")
        assert InputFile(data=encoded).content() == b"hello"

    def test_invalid_base64_raises(self):
        with pytest.raises(ValueError, match="Invalid base64"):
            InputFile(data="not base64!!").content()

    def test_remote_file_has_no_content(self):
        with pytest.raises(ValueError):
            InputFile.from_url("https://x/a.png").content()


class TestFingerprint:
    """Test fingerprint determinism and sensitivity."""

    def test_stable_across_calls(self):
        params = {"prompt": "a lion", "seed": 42}
        assert compute_fingerprint(ENDPOINT, params) == compute_fingerprint(ENDPOINT, params)

    def test_key_order_does_not_matter(self):
        a = compute_fingerprint(ENDPOINT, {"prompt": "a lion", "seed": 42})
        b = compute_fingerprint(ENDPOINT, {"seed": 42, "prompt": "a lion"})
        assert a == b

    def test_nested_key_order_does_not_matter(self):
        a = compute_fingerprint(ENDPOINT, {"size": {"width": 1, "height": 2}})
        b = compute_fingerprint(ENDPOINT, {"size": {"height": 2, "width": 1}})
        assert a == b

    def test_parameter_value_changes_fingerprint(self):
        a = compute_fingerprint(ENDPOINT, {"prompt": "a lion"})
        b = compute_fingerprint(ENDPOINT, {"prompt": "a tiger"})
        assert a != b

    def test_endpoint_changes_fingerprint(self):
        params = {"prompt": "a lion"}
        assert compute_fingerprint(ENDPOINT, params) != compute_fingerprint("fal-ai/flux/dev", params)

    def test_file_content_changes_fingerprint(self):
        params = {"prompt": "edit"}
        a = compute_fingerprint(ENDPOINT, params, [InputFile.from_bytes(b"one")])
        b = compute_fingerprint(ENDPOINT, params, [InputFile.from_bytes(b"two")])
        assert a != b

    def test_file_order_changes_fingerprint(self):
        params = {"prompt": "edit"}
        first = InputFile.from_bytes(b"one")
        second = InputFile.from_bytes(b"two")
        assert (compute_fingerprint(ENDPOINT, params, [first, second])
                != compute_fingerprint(ENDPOINT, params, [second, first]))

    def test_base64_and_bytes_hash_the_same(self):
        raw = b"\x89PNG fake image"
        encoded = base64.b64encode(raw).decode("ascii")
        assert compute_file_hashes([InputFile(data=encoded)]) == [content_hash(raw)]

    def test_remote_files_contribute_url(self):
        url = "https://cdn.example.com/a.png"
        assert compute_file_hashes([InputFile.from_url(url)]) == [url]

    def test_volatile_params_are_ignored(self):
        a = compute_fingerprint(ENDPOINT, {"prompt": "a lion"})
        b = compute_fingerprint(ENDPOINT, {"prompt": "a lion", "webhook_url": "https://hook"})
        c = compute_fingerprint(ENDPOINT, {"prompt": "a lion", "on_progress": print})
        assert a == b == c

    def test_unserializable_params_raise(self):
        with pytest.raises(FingerprintError):
            compute_fingerprint(ENDPOINT, {"prompt": object()})

    def test_nan_raises(self):
        with pytest.raises(FingerprintError):
            compute_fingerprint(ENDPOINT, {"guidance": float("nan")})

    def test_key_prefixes(self):
        assert pending_key("ab") == "pending_ab"
        assert result_key("ab") == "result_ab"
        assert upload_key("ab") == "upload_ab"
