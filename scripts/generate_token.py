#!/usr/bin/env python3
"""
Generate secrets for the dispatch service configuration.

Usage:
    python scripts/generate_token.py              # one 32-byte token
    python scripts/generate_token.py 48           # one 48-byte token
    python scripts/generate_token.py --env        # ADMIN_TOKEN and TELEGRAM_WEBHOOK_SECRET lines
    python scripts/generate_token.py --hash PASS  # bcrypt hash for an admin account row

Example output:
    ADMIN_TOKEN=Yx8kL2mN9pQ4rS6tU0vW3xZ5aB7cD1eF
    TELEGRAM_WEBHOOK_SECRET=fG2hJ4kL6mN8pQ0rS2tU4vW6xZ8aB0cD
"""
import secrets
import sys

from fieldops.infra.passwords import hash_password
from fieldops.transport.security import validate_token_strength


def generate_token(length: int = 32) -> str:
    """URL-safe random token; also valid as a Telegram webhook secret."""
    token = secrets.token_urlsafe(length)
    # Re-roll draws that trip the startup strength check (short lengths always do)
    for _ in range(100):
        if not validate_token_strength(token):
            break
        token = secrets.token_urlsafe(length)
    return token


def main():
    length = 32
    env_format = False
    args = sys.argv[1:]

    if args[:1] == ["--hash"]:
        if len(args) != 2:
            print("usage: generate_token.py --hash PASSWORD", file=sys.stderr)
            sys.exit(2)
        print(hash_password(args[1]))
        return

    for arg in args:
        if arg == "--env":
            env_format = True
        elif arg.isdigit():
            length = int(arg)
        elif arg in ("--help", "-h"):
            print(__doc__)
            return

    if env_format:
        print(f"ADMIN_TOKEN={generate_token(length)}")
        print(f"TELEGRAM_WEBHOOK_SECRET={generate_token(length)}")
    else:
        print(generate_token(length))


if __name__ == "__main__":
    main()
