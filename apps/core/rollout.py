"""
Deterministic percentage rollout bucketing.

The bucket is derived from SHA-256 so it is stable across processes,
interpreters and languages (Python's hash() is salted per process).
"""

import hashlib


def rollout_bucket(identifier: str, salt: str = "") -> int:
    """
    Map an identifier to a bucket in [0, 100).

    Algorithm: sha256(f"{salt}:{identifier}"), first 8 bytes read as a
    big-endian unsigned integer, modulo 100.
    """
    digest = hashlib.sha256(f"{salt}:{identifier}".encode()).digest()
    return int.from_bytes(digest[:8], "big") % 100


def is_in_rollout(identifier: str, percentage: int, salt: str = "") -> bool:
    """True when the identifier's bucket falls under the rollout percentage."""
    if percentage >= 100:
        return True
    if percentage <= 0:
        return False
    return rollout_bucket(identifier, salt) < percentage
