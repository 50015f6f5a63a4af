"""
SiteSurvey Backend — Google Drive Maintenance
===============================================

What:  One-off operator commands for the Drive storage backend.
Usage (from backend/):

    python -m scripts.drive_permissions setup [NAME]   create a public root folder
    python -m scripts.drive_permissions verify         report non-public children
    python -m scripts.drive_permissions fix            make every child public

Reads GOOGLE_CLIENT_EMAIL / GOOGLE_PRIVATE_KEY / GOOGLE_DRIVE_FOLDER_ID from
the same environment (or .env) as the server.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from app.services.drive_storage import DriveStorageClient

logger = logging.getLogger("sitesurvey.drive")


async def setup(client: DriveStorageClient, name: str) -> int:
    folder = await client.create_root_folder(name)
    print(f"Created folder '{folder.get('name')}' ({folder['id']})")
    if folder.get("webViewLink"):
        print(f"  {folder['webViewLink']}")
    print(f"Set GOOGLE_DRIVE_FOLDER_ID={folder['id']}")
    return 0


async def verify(client: DriveStorageClient) -> int:
    children = await client.list_children()
    private = [c for c in children if not await client.is_public(c["id"])]
    print(f"{len(children)} items, {len(private)} not publicly readable")
    for child in private:
        print(f"  {child['id']}  {child.get('name', '')}")
    return 1 if private else 0


async def fix(client: DriveStorageClient) -> int:
    fixed = 0
    for child in await client.list_children():
        if await client.ensure_public(child["id"]):
            fixed += 1
            logger.info("Granted public read on %s (%s)", child["id"], child.get("name"))
    print(f"Granted public read on {fixed} items")
    return 0


async def run(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="drive_permissions", description="Google Drive maintenance for the upload folder")
    commands = parser.add_subparsers(dest="command", required=True)
    setup_parser = commands.add_parser("setup", help="create a public root upload folder")
    setup_parser.add_argument("name", nargs="?", default="Site Survey Uploads")
    commands.add_parser("verify", help="list children that are not publicly readable")
    commands.add_parser("fix", help="grant public read on every child")
    args = parser.parse_args(argv)

    client = DriveStorageClient()
    if args.command == "setup":
        return await setup(client, args.name)
    if args.command == "verify":
        return await verify(client)
    return await fix(client)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    sys.exit(asyncio.run(run()))
