"""
Operator Authentication

Mutating endpoints (manual vote, history clear) require a bearer key.
Only ``sha256:<hex>`` fingerprints of the keys are configured; raw keys
never sit in the environment. Generate a pair with ``scripts/keygen.py``.
"""

from __future__ import annotations

import hashlib
import hmac


def hash_api_key(raw_key: str) -> str:
    """Return ``sha256:<hex>`` fingerprint of a raw API key."""
    digest = hashlib.sha256(raw_key.encode()).hexdigest()
    return f"sha256:{digest}"


def authenticate_operator(bearer_token: str, fingerprints: list[str]) -> str:
    """Resolve a bearer token to the matching configured fingerprint.

    Compares (timing-safe) against every configured fingerprint. Raises
    ``ValueError`` when no operator keys are configured or none match.
    """
    if not fingerprints:
        raise ValueError("No operator keys configured; mutating endpoints are disabled")

    token_fp = hash_api_key(bearer_token)
    for fingerprint in fingerprints:
        if hmac.compare_digest(token_fp, fingerprint):
            return fingerprint

    raise ValueError("Invalid API key: no matching operator key found")
