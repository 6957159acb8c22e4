#!/usr/bin/env python3
"""Delete a caller's stored chat history.

Counterpart to removing the user from the identity provider: every durable
message record of the owner (or of one conversation) is deleted, along with
the matching session cache keys.

Usage:
    python scripts/purge_owner.py --owner <sub>
    python scripts/purge_owner.py --owner <sub> --conversation conv_1700000000000_ab12cd
    python scripts/purge_owner.py --owner <sub> --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    REDIS_HOST / REDIS_ENCRYPTION_KEY: session cache to clear alongside (optional)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def purge_owner(owner_id: str, conversation_id: Optional[str] = None, dry_run: bool = False) -> dict:
    """Delete the owner's conversations.

    Returns:
        dict with owner_id, the conversation ids touched and the deleted record count
    """
    # Import here to avoid loading config before env vars are set
    from carechat.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if conversation_id:
            conversation_ids = [conversation_id]
        else:
            summaries = await runtime.chat.list_conversations(owner_id)
            conversation_ids = [s.conversation_id for s in summaries]

        if dry_run:
            for cid in conversation_ids:
                records = await runtime.chat.list_messages(owner_id, cid)
                print(f"[DRY RUN] Would delete {len(records)} messages from {cid}")
            return {"owner_id": owner_id, "conversations": conversation_ids, "deleted": 0}

        deleted = 0
        for cid in conversation_ids:
            removed = await runtime.chat.delete_conversation(owner_id, cid)
            print(f"Deleted {removed} messages from {cid}")
            deleted += removed
        return {"owner_id": owner_id, "conversations": conversation_ids, "deleted": deleted}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Delete stored chat history for one caller",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--owner",
        default=os.environ.get("PURGE_OWNER_ID"),
        help="Caller subject id (or set PURGE_OWNER_ID env var)",
    )
    parser.add_argument(
        "--conversation",
        default=None,
        help="Only delete this conversation id",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be deleted without making changes",
    )

    args = parser.parse_args()

    if not args.owner:
        print("Error: --owner or PURGE_OWNER_ID environment variable required")
        sys.exit(1)

    try:
        result = asyncio.run(purge_owner(args.owner, args.conversation, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.dry_run:
        print(f"\n{len(result['conversations'])} conversation(s) would be purged.")
    else:
        print(f"\nPurged {result['deleted']} messages across {len(result['conversations'])} conversation(s).")


if __name__ == "__main__":
    main()
