#!/usr/bin/env python3
"""
Seed a store database with sample orders, products, posts and tickets so the
agent has something to act on in development.
"""

import argparse
import json
import sys
from pathlib import Path

# Add the repository root to sys.path to import the package without installing it
sys.path.insert(0, str(Path(__file__).parent.parent))

from storeagent.core import config
from storeagent.core.store import CommerceStore

SAMPLE_ORDERS = [
    ("ada@example.com", "Ada Lovelace", [{"sku": "MUG-01", "qty": 2}], 24.0, "PENDING"),
    ("alan@example.com", "Alan Turing", [{"sku": "TEE-02", "qty": 1}], 19.5, "PROCESSING"),
    ("grace@example.com", "Grace Hopper", [{"sku": "CAP-03", "qty": 1}], 15.0, "DELIVERED"),
    ("edsger@example.com", "Edsger Dijkstra", [{"sku": "MUG-01", "qty": 1}], 12.0, "SHIPPED"),
]

SAMPLE_PRODUCTS = [
    ("Coffee Mug", 12.0, 40),
    ("Logo T-Shirt", 19.5, 6),
    ("Baseball Cap", 15.0, 0),
]

SAMPLE_POSTS = ["Spring Collection Launch", "How We Pack Orders", "Holiday Shipping Dates"]

SAMPLE_TICKETS = [
    ("Order arrived damaged", "grace@example.com", "HIGH"),
    ("Where is my parcel?", "edsger@example.com", "MEDIUM"),
]


def seed(store: CommerceStore) -> dict:
    """Insert the sample records and return the row counts."""
    for email, name, items, total, status in SAMPLE_ORDERS:
        store.create_order(email, items, total, customer_name=name, status=status)
    for name, price, stock in SAMPLE_PRODUCTS:
        store.create_product(name, price, stock=stock)
    for title in SAMPLE_POSTS:
        store.create_post(title)
    for subject, email, priority in SAMPLE_TICKETS:
        store.create_ticket(subject, email, priority=priority)
    store.get_site_config()
    return store.counts()


def main():
    parser = argparse.ArgumentParser(description="Seed the store database with sample data")
    parser.add_argument("--db-path", default=config.DB_PATH, help="SQLite database path (default: DB_PATH)")
    parser.add_argument("--json", "-j", action="store_true", help="Output counts as JSON")
    args = parser.parse_args()

    config.ensure_db_directory(args.db_path)
    counts = seed(CommerceStore(args.db_path))

    if args.json:
        print(json.dumps(counts, indent=2))
    else:
        print(f"Seeded {args.db_path}")
        for table, count in counts.items():
            print(f"  {table}: {count}")


if __name__ == "__main__":
    main()
