"""
Hashing primitives for audit inputs and stable identifiers.

Current scope:
- Content hashes for uploaded source files
- Deterministic, short identifiers derived from structural parts
  (rule id, file, line) so the same issue keeps the same id across runs

IMPORTANT:
- Identifiers MUST NOT depend on wall-clock time or randomness.
- This module hashes text and bytes only. It does not normalize source.
"""

import hashlib
from typing import Union


def compute_content_hash(content: Union[str, bytes, bytearray]) -> str:
    """
    Compute a human-readable SHA-256 hash of file content.

    Text is encoded as UTF-8 before hashing.

    Returns:
        A hash string with an explicit algorithm prefix.
        Example: ``SHA-256:3b7c0e4c...``
    """
    if isinstance(content, str):
        content = content.encode("utf-8")

    if not isinstance(content, (bytes, bytearray)):
        raise TypeError(
            "compute_content_hash expects str or bytes, "
            f"got {type(content).__name__}"
        )

    digest = hashlib.sha256(content).hexdigest()
    return f"SHA-256:{digest}"


def stable_identifier(*parts: object, length: int = 12) -> str:
    """
    Derive a short deterministic identifier from ordered parts.
    """
    material = "\x1f".join(str(part) for part in parts)
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:length]
