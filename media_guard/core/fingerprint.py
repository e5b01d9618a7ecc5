"""
Request fingerprinting.

Derives a deterministic key for the logical identity of a generation
request: endpoint, parameters and the ordered content of its input files.
"""

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

# Parameters that change between otherwise identical calls
VOLATILE_PARAM_KEYS = frozenset({
    "abort_signal",
    "callback",
    "cancel_event",
    "on_progress",
    "on_queue_update",
    "timestamp",
    "webhook_url",
})


class FingerprintError(Exception):
    """Raised when a request has no stable, serializable identity."""


@dataclass(frozen=True)
class InputFile:
    """An input file: either a remote reference or raw content."""
    url: Optional[str] = None
    data: Union[bytes, str, None] = None  # raw bytes or base64 text
    media_type: Optional[str] = None

    def __post_init__(self):
        if (self.url is None) == (self.data is None):
            raise ValueError("InputFile needs exactly one of url or data")

    @classmethod
    def from_url(cls, url: str, media_type: Optional[str] = None) -> "InputFile":
        return cls(url=url, media_type=media_type)

    @classmethod
    def from_bytes(cls, data: bytes, media_type: Optional[str] = None) -> "InputFile":
        return cls(data=data, media_type=media_type)

    @property
    def is_remote(self) -> bool:
        return self.url is not None

    def content(self) -> bytes:
        """Raw bytes of a local file; base64 text is decoded.

        Raises:
            ValueError: For remote files or invalid base64
        """
        if self.data is None:
            raise ValueError("Remote files have no local content")
        if isinstance(self.data, bytes):
            return self.data
        try:
            return base64.b64decode(self.data, validate=True)
        except binascii.Error as e:
            raise ValueError(f"Invalid base64 file data: {e}")


def content_hash(data: bytes) -> str:
    """Fast content hash of raw bytes (128-bit BLAKE2b, hex)."""
    return hashlib.blake2b(data, digest_size=16).hexdigest()


def compute_file_hashes(files: Optional[Sequence[InputFile]]) -> List[str]:
    """Hash input files in caller order.

    Remote files contribute their URL verbatim; local files contribute the
    hash of their bytes.
    """
    if not files:
        return []
    return [f.url if f.is_remote else content_hash(f.content()) for f in files]


def _stable_params(params: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value
        for key, value in params.items()
        if key not in VOLATILE_PARAM_KEYS and not callable(value)
    }


def compute_fingerprint(
    endpoint: str,
    params: Dict[str, Any],
    files: Optional[Sequence[InputFile]] = None
) -> str:
    """Compute the fingerprint of a generation request.

    Parameter keys are serialized in sorted order, so two dicts with the same
    items give the same key. File order is preserved: providers treat the
    first input differently from the second.

    Args:
        endpoint: Provider endpoint identifier
        params: Request parameters
        files: Ordered input files

    Returns:
        Hex digest identifying the logical request

    Raises:
        FingerprintError: If parameters are not JSON-serializable
    """
    try:
        payload = [endpoint, _stable_params(params), compute_file_hashes(files)]
        serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise FingerprintError(f"Parameters for {endpoint} have no stable identity: {e}")
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def pending_key(fingerprint: str) -> str:
    return f"pending_{fingerprint}"


def result_key(fingerprint: str) -> str:
    return f"result_{fingerprint}"


def upload_key(file_hash: str) -> str:
    return f"upload_{file_hash}"
