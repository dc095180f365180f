#!/usr/bin/env python3
"""
Register (or update) a platform connection with an encrypted credential bundle.
Connection management UI lives in the dashboard; this is for setup and testing.

Run from backend/:
  python -m scripts.add_connection --tenant <uuid> --platform tiktok --account 7012345678 \
      --credentials '{"access_token": "..."}'
"""
import argparse
import asyncio
import json
import sys
import uuid
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


async def main(args: argparse.Namespace):
    from autopilot.crypto import encrypt_credentials
    from autopilot.database import async_session, init_db
    from autopilot.models import PlatformConnection
    from sqlalchemy import select, and_

    try:
        bundle = json.loads(args.credentials)
    except ValueError:
        print("Error: --credentials must be a JSON object")
        sys.exit(1)
    if not isinstance(bundle, dict):
        print("Error: --credentials must be a JSON object")
        sys.exit(1)

    await init_db()
    async with async_session() as db:
        r = await db.execute(select(PlatformConnection).where(and_(
            PlatformConnection.tenant_id == args.tenant,
            PlatformConnection.platform == args.platform,
            PlatformConnection.account_id == args.account,
        )))
        conn = r.scalar_one_or_none()
        if conn:
            conn.credentials = encrypt_credentials(bundle)
            conn.account_name = args.name or conn.account_name
            conn.is_active = True
            action = "Updated"
        else:
            conn = PlatformConnection(
                tenant_id=args.tenant,
                platform=args.platform,
                account_id=args.account,
                account_name=args.name,
                credentials=encrypt_credentials(bundle),
            )
            db.add(conn)
            action = "Created"
        await db.commit()
        print(f"{action} {args.platform} connection {conn.id} for account {args.account}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Register a platform connection")
    parser.add_argument("--tenant", type=uuid.UUID, required=True)
    parser.add_argument("--platform", choices=["tiktok", "meta", "google", "shopee"], required=True)
    parser.add_argument("--account", required=True, help="Platform account / advertiser id")
    parser.add_argument("--name", help="Display name")
    parser.add_argument("--credentials", required=True, help="JSON credential bundle")
    asyncio.run(main(parser.parse_args()))
