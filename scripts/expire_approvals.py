#!/usr/bin/env python3
"""
Mark approval requests that outlived APPROVAL_TTL_SEC as EXPIRED.

Run periodically (e.g. from cron). Redemption rejects over-TTL requests
whether or not the sweep has run.
"""

import argparse
import json
import sys
from pathlib import Path

# Add the repository root to sys.path to import the package without installing it
sys.path.insert(0, str(Path(__file__).parent.parent))

from storeagent.agents.actions import build_default_registry
from storeagent.core import config
from storeagent.core.approval import ApprovalBroker


def main():
    parser = argparse.ArgumentParser(description="Expire stale approval requests")
    parser.add_argument("--db-path", default=config.DB_PATH, help="SQLite database path (default: DB_PATH)")
    parser.add_argument("--json", "-j", action="store_true", help="Output results as JSON")
    args = parser.parse_args()

    broker = ApprovalBroker(build_default_registry(), args.db_path)
    expired = broker.expire_stale()
    stats = broker.stats()

    if args.json:
        print(json.dumps({"expired": expired, "approvals": stats}, indent=2))
    else:
        print(f"Expired {expired} approval request(s)")
        print(f"Pending: {stats['pending']}, consumed: {stats['consumed']}, expired: {stats['expired']}")


if __name__ == "__main__":
    main()
