"""Content fingerprinting for lesson deduplication."""

import hashlib
import hmac


def content_hash(content: str) -> str:
    """Return the SHA-256 hex digest of the UTF-8 encoded content.

    Raises:
        UnicodeEncodeError: If the content contains lone surrogates. Partial
            data is never hashed.
    """
    return hashlib.sha256(content.encode("utf-8", errors="strict")).hexdigest()


def hashes_equal(hash_a: str, hash_b: str) -> bool:
    """Compare two digests in constant time."""
    return hmac.compare_digest(hash_a.encode("ascii"), hash_b.encode("ascii"))
