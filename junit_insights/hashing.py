"""Content fingerprints for upload-level deduplication."""

import hashlib


def generate_hash(content: bytes | str) -> str:
    """SHA-256 hex digest of a raw payload. Text is hashed as UTF-8."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    if not isinstance(content, (bytes, bytearray)):
        raise TypeError(f"Cannot hash {type(content).__name__}")
    return hashlib.sha256(content).hexdigest()
