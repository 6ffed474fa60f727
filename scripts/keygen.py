#!/usr/bin/env python3
"""
Ballot Operator Key Generator

Generates a new operator API key with a `blt_` prefix and prints:
  - The raw key (give to the operator, store securely)
  - The SHA-256 fingerprint (add to OPERATOR_KEY_FINGERPRINTS)

Usage:  python scripts/keygen.py [label]
        label defaults to "operator"
"""

from __future__ import annotations

import secrets
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from ballot.identity import hash_api_key


def generate_key() -> str:
    """Return a `blt_` prefixed key with 32 bytes of URL-safe randomness."""
    return "blt_" + secrets.token_urlsafe(32)


def main():
    label = sys.argv[1] if len(sys.argv) > 1 else "operator"
    raw = generate_key()
    fp = hash_api_key(raw)

    print()
    print("=== Ballot Operator Key ===")
    print()
    print(f"  Label:       {label}")
    print(f"  Raw Key:     {raw}")
    print(f"  Fingerprint: {fp}")
    print()
    print("--- Append to the agent environment (comma-separated for several keys) ---")
    print(f"OPERATOR_KEY_FINGERPRINTS={fp}")
    print()


if __name__ == "__main__":
    main()
