#!/usr/bin/env python3
"""Generate an identity encryption key and, optionally, API keys.

Usage:
    python scripts/generate_keys.py
    python scripts/generate_keys.py --api-keys 3 --length 40

The encryption key is printed in the form expected by ENCRYPTION_KEY.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main():
    parser = argparse.ArgumentParser(
        description="Generate keys for the session service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--api-keys",
        type=int,
        default=0,
        help="Number of API keys to generate",
    )
    parser.add_argument(
        "--length",
        type=int,
        default=32,
        help="Length of each API key (minimum 16)",
    )
    parser.add_argument(
        "--no-encryption-key",
        action="store_true",
        help="Skip generating the identity encryption key",
    )

    args = parser.parse_args()

    from sessionvault.config import encode_key
    from sessionvault.service.identity import IdentityTokenCodec
    from sessionvault.service.scopes import generate_api_keys

    if args.api_keys < 0:
        print("Error: --api-keys must not be negative")
        sys.exit(1)

    if not args.no_encryption_key:
        print(f"ENCRYPTION_KEY={encode_key(IdentityTokenCodec.generate_key())}")

    try:
        for key in generate_api_keys(args.api_keys, args.length):
            print(key)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
