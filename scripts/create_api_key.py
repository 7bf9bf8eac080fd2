#!/usr/bin/env python3
"""
Create API Key Script

Creates a service API key and prints the plaintext once. Only the Argon2id
hash is stored.
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from autogift.db.session import close_engines, get_write_session
from autogift.observability import get_logger, setup_logging
from autogift.services.api_key import ALL_PERMISSIONS, DEFAULT_PERMISSIONS, APIKeyService

setup_logging()
logger = get_logger(__name__)


async def create_key(
    name: str, environment: str, permissions: list[str], expires_in_days: int | None
) -> None:
    try:
        async with get_write_session() as session:
            generated = await APIKeyService(session).create_api_key(
                name=name,
                environment=environment,
                permissions=permissions,
                expires_in_days=expires_in_days,
            )
    finally:
        await close_engines()

    print(f"Key ID:      {generated.key_id}")
    print(f"Permissions: {', '.join(generated.permissions)}")
    print(f"API key:     {generated.plaintext_key}")
    print("Store this key now; it cannot be shown again.")


def main():
    parser = argparse.ArgumentParser(description="Create an auto-gift service API key")
    parser.add_argument("name", help="Human-readable key name (e.g. 'Scheduler')")
    parser.add_argument("--environment", choices=["test", "live"], default="live")
    parser.add_argument(
        "--permission",
        action="append",
        choices=list(ALL_PERMISSIONS),
        help=f"Grant a permission (repeatable, default: {', '.join(DEFAULT_PERMISSIONS)})",
    )
    parser.add_argument("--expires-in-days", type=int, help="Expire after N days")

    args = parser.parse_args()
    permissions = args.permission or list(DEFAULT_PERMISSIONS)

    asyncio.run(create_key(args.name, args.environment, permissions, args.expires_in_days))


if __name__ == "__main__":
    main()
