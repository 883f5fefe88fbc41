#!/usr/bin/env python3
"""CLI script to run an accounting sync for one tenant.

Usage:
    uv run python scripts/run_sync.py --tenant acme
    uv run python scripts/run_sync.py --tenant acme --entity-type customer --direction from_remote
    uv run python scripts/run_sync.py --tenant acme --status
    uv run python scripts/run_sync.py --generate-key

Connects directly to the database and Redis using DATABASE_URL / REDIS_URL
from environment or .env file. The tenant must already be connected.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Ensure project root is on sys.path so we can import src.ledgerlink
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(tenant_id: str, entity_type: str | None, direction: str, status_only: bool) -> int:
    from src.ledgerlink.accounting.container import build_accounting
    from src.ledgerlink.accounting.errors import AccountingSyncError
    from src.ledgerlink.accounting.schemas import EntityType, SyncDirection
    from src.ledgerlink.api.middleware.logging import configure_structlog
    from src.ledgerlink.config import get_settings
    from src.ledgerlink.core.database import close_db, get_session
    from src.ledgerlink.core.redis import close_redis, get_redis_pool

    configure_structlog()
    settings = get_settings()
    try:
        service = build_accounting(settings, get_session, get_redis_pool()).service
        if status_only:
            status = await service.get_connection_status(tenant_id)
            print(json.dumps(status.model_dump(mode="json"), indent=2))
            return 0

        if entity_type:
            result = await service.sync_entity_type(
                tenant_id, EntityType(entity_type), SyncDirection(direction)
            )
            print(json.dumps(result.model_dump(mode="json"), indent=2))
            return 1 if result.errors else 0

        report = await service.sync_all(tenant_id, SyncDirection(direction))
        print(json.dumps(report.model_dump(mode="json"), indent=2))
        return 1 if report.total.errors else 0
    except AccountingSyncError as exc:
        print(f"Sync failed: {type(exc).__name__}: {exc}", file=sys.stderr)
        return 2
    finally:
        await close_db()
        await close_redis()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run an accounting sync for a tenant")
    parser.add_argument("--tenant", help="Tenant id")
    parser.add_argument(
        "--entity-type",
        default=None,
        choices=["account", "customer", "vendor", "item", "invoice", "payment", "bill"],
        help="Sync only this entity type (default: all, in dependency order)",
    )
    parser.add_argument(
        "--direction",
        default="both",
        choices=["from_remote", "to_remote", "both"],
        help="Sync direction (default: both)",
    )
    parser.add_argument("--status", action="store_true", help="Print connection status and exit")
    parser.add_argument(
        "--generate-key", action="store_true", help="Print a new SECRETS_ENCRYPTION_KEY and exit"
    )
    args = parser.parse_args()

    if args.generate_key:
        from src.ledgerlink.accounting.crypto import SecretCipher

        print(SecretCipher.generate_key())
        return

    if not args.tenant:
        parser.error("--tenant is required")

    sys.exit(asyncio.run(run(args.tenant, args.entity_type, args.direction, args.status)))


if __name__ == "__main__":
    main()
