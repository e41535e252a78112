#!/usr/bin/env python3
"""Generate a Fernet encryption key for stored YouTube access tokens.

The generated key must be set as the FERNET_KEY environment variable of
the playlist manager service.

Usage:
    python scripts/generate_fernet_key.py
    python scripts/generate_fernet_key.py --quiet   # key only, for scripting

Security Notes:
    - Generate a unique key per environment (staging, production)
    - Never commit the key to version control
    - Rotating the key invalidates every stored token; users must sign in again
"""

import argparse

from cryptography.fernet import Fernet


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a FERNET_KEY value")
    parser.add_argument("--quiet", action="store_true", help="Print only the key")
    args = parser.parse_args()

    key_string = Fernet.generate_key().decode()

    if args.quiet:
        print(key_string)
        return

    print("=" * 60)
    print("Generated Fernet Encryption Key")
    print("=" * 60)
    print()
    print(f"FERNET_KEY={key_string}")
    print()
    print("Set this variable in the service environment.")
    print("Keep a secure backup: stored tokens cannot be read without it.")
    print("=" * 60)


if __name__ == "__main__":
    main()
