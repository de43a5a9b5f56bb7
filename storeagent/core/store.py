"""
Store collaborator - create/find/update over the domain records that action
handlers touch (orders, products, posts, tickets, site config).

Updates are per-record atomic and bump a ``version`` column; callers may pass
``expected_version`` for optimistic concurrency.
"""

import json
import re
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .db import get_db, init_db
from .errors import RecordNotFound, StaleRecord
from .schema import (
    OrderRecord, ProductRecord, PostRecord, TicketRecord, SiteConfigRecord, NotificationRecord
)
from . import config


def _dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _order(row) -> OrderRecord:
    return OrderRecord(
        id=row["id"],
        order_ref=row["order_ref"],
        customer_name=row["customer_name"],
        customer_email=row["customer_email"],
        items=json.loads(row["items"]) if row["items"] else [],
        total=row["total"],
        status=row["status"],
        created_at=_dt(row["created_at"]),
        updated_at=_dt(row["updated_at"]),
        version=row["version"],
    )


def _product(row) -> ProductRecord:
    return ProductRecord(
        id=row["id"],
        name=row["name"],
        slug=row["slug"],
        price=row["price"],
        stock=row["stock"],
        available=bool(row["available"]),
        updated_at=_dt(row["updated_at"]),
        version=row["version"],
    )


def _post(row) -> PostRecord:
    return PostRecord(
        id=row["id"],
        title=row["title"],
        slug=row["slug"],
        status=row["status"],
        published_at=_dt(row["published_at"]),
        updated_at=_dt(row["updated_at"]),
        version=row["version"],
    )


def _ticket(row) -> TicketRecord:
    return TicketRecord(
        id=row["id"],
        subject=row["subject"],
        customer_email=row["customer_email"],
        status=row["status"],
        priority=row["priority"],
        assigned_to=row["assigned_to"],
        resolution=row["resolution"],
        updated_at=_dt(row["updated_at"]),
        version=row["version"],
    )


def _site_config(row) -> SiteConfigRecord:
    return SiteConfigRecord(
        maintenance_mode=bool(row["maintenance_mode"]),
        last_cache_clear=_dt(row["last_cache_clear"]),
        updated_at=_dt(row["updated_at"]),
        version=row["version"],
    )


def _notification(row) -> NotificationRecord:
    return NotificationRecord(
        id=row["id"],
        order_id=row["order_id"],
        recipient=row["recipient"],
        subject=row["subject"],
        message=row["message"],
        sent_at=_dt(row["sent_at"]),
    )


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or uuid.uuid4().hex[:8]


def _db_value(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


class CommerceStore:
    """SQLite implementation of the persistence collaborator."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DB_PATH
        init_db(self.db_path)

    # Orders

    def create_order(self, customer_email: str, items: List[Dict[str, Any]], total: float,
                     customer_name: Optional[str] = None, status: str = "PENDING") -> OrderRecord:
        now = datetime.now().isoformat()
        order_id = self._insert("orders", {
            "order_ref": f"ORD-{uuid.uuid4().hex[:10].upper()}",
            "customer_name": customer_name,
            "customer_email": customer_email,
            "items": json.dumps(items),
            "total": total,
            "status": status,
            "created_at": now,
            "updated_at": now,
        })
        return self.get_order(order_id)

    def get_order(self, order_id: int) -> OrderRecord:
        return self._get("orders", order_id, _order)

    def list_orders(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[OrderRecord]:
        return self._list("orders", _order, {"status": status} if status else {}, "created_at DESC", limit)

    def update_order(self, order_id: int, expected_version: Optional[int] = None, **fields) -> OrderRecord:
        self._update("orders", order_id, fields, expected_version)
        return self.get_order(order_id)

    # Products

    def create_product(self, name: str, price: float, stock: int = 0, available: bool = True) -> ProductRecord:
        product_id = self._insert("products", {
            "name": name,
            "slug": slugify(name),
            "price": price,
            "stock": stock,
            "available": available,
            "updated_at": datetime.now().isoformat(),
        })
        return self.get_product(product_id)

    def get_product(self, product_id: int) -> ProductRecord:
        return self._get("products", product_id, _product)

    def list_low_stock_products(self, threshold: int) -> List[ProductRecord]:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM products WHERE stock <= ? ORDER BY stock ASC, id ASC", (threshold,))
            return [_product(row) for row in cursor.fetchall()]

    def update_product(self, product_id: int, expected_version: Optional[int] = None, **fields) -> ProductRecord:
        self._update("products", product_id, fields, expected_version)
        return self.get_product(product_id)

    # Posts

    def create_post(self, title: str, status: str = "DRAFT") -> PostRecord:
        post_id = self._insert("posts", {
            "title": title,
            "slug": slugify(title),
            "status": status,
            "updated_at": datetime.now().isoformat(),
        })
        return self.get_post(post_id)

    def get_post(self, post_id: int) -> PostRecord:
        return self._get("posts", post_id, _post)

    def update_post(self, post_id: int, expected_version: Optional[int] = None, **fields) -> PostRecord:
        self._update("posts", post_id, fields, expected_version)
        return self.get_post(post_id)

    # Tickets

    def create_ticket(self, subject: str, customer_email: str, priority: str = "MEDIUM") -> TicketRecord:
        ticket_id = self._insert("tickets", {
            "subject": subject,
            "customer_email": customer_email,
            "priority": priority,
            "updated_at": datetime.now().isoformat(),
        })
        return self.get_ticket(ticket_id)

    def get_ticket(self, ticket_id: int) -> TicketRecord:
        return self._get("tickets", ticket_id, _ticket)

    def list_tickets(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[TicketRecord]:
        return self._list("tickets", _ticket, {"status": status} if status else {}, "id ASC", limit)

    def update_ticket(self, ticket_id: int, expected_version: Optional[int] = None, **fields) -> TicketRecord:
        self._update("tickets", ticket_id, fields, expected_version)
        return self.get_ticket(ticket_id)

    # Site config (singleton row)

    def get_site_config(self) -> SiteConfigRecord:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO site_config (id, maintenance_mode, updated_at) VALUES (1, 0, ?)",
                (datetime.now().isoformat(),)
            )
            conn.commit()
            cursor.execute("SELECT * FROM site_config WHERE id = 1")
            return _site_config(cursor.fetchone())

    def update_site_config(self, expected_version: Optional[int] = None, **fields) -> SiteConfigRecord:
        self.get_site_config()
        self._update("site_config", 1, fields, expected_version)
        return self.get_site_config()

    # Notifications (outbound mail is simulated by recording it)

    def add_notification(self, order_id: int, recipient: str, subject: str, message: str) -> NotificationRecord:
        notification_id = self._insert("notifications", {
            "order_id": order_id,
            "recipient": recipient,
            "subject": subject,
            "message": message,
            "sent_at": datetime.now().isoformat(),
        })
        return self._get("notifications", notification_id, _notification)

    def list_notifications(self, order_id: int) -> List[NotificationRecord]:
        return self._list("notifications", _notification, {"order_id": order_id}, "id ASC")

    def counts(self) -> Dict[str, int]:
        """Row counts per domain table, for status summaries."""
        result = {}
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            for table in ("orders", "products", "posts", "tickets"):
                cursor.execute(f"SELECT COUNT(*) FROM {table}")
                result[table] = cursor.fetchone()[0]
        return result

    # Generic helpers

    def _insert(self, table: str, values: Dict[str, Any]) -> int:
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                [_db_value(v) for v in values.values()]
            )
            conn.commit()
            return cursor.lastrowid

    def _get(self, table: str, record_id: int, convert: Callable):
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,))
            row = cursor.fetchone()
        if row is None:
            raise RecordNotFound(table, record_id)
        return convert(row)

    def _list(self, table: str, convert: Callable, filters: Dict[str, Any],
              order_by: str, limit: Optional[int] = None) -> list:
        query = f"SELECT * FROM {table}"
        args: List[Any] = []
        if filters:
            query += " WHERE " + " AND ".join(f"{column} = ?" for column in filters)
            args.extend(filters.values())
        query += f" ORDER BY {order_by}"
        if limit is not None:
            query += " LIMIT ?"
            args.append(limit)

        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(query, args)
            return [convert(row) for row in cursor.fetchall()]

    def _update(self, table: str, record_id: int, fields: Dict[str, Any],
                expected_version: Optional[int] = None):
        fields = dict(fields)
        fields.setdefault("updated_at", datetime.now())

        assignments = ", ".join(f"{column} = ?" for column in fields)
        query = f"UPDATE {table} SET {assignments}, version = version + 1 WHERE id = ?"
        args = [_db_value(v) for v in fields.values()] + [record_id]
        if expected_version is not None:
            query += " AND version = ?"
            args.append(expected_version)

        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(query, args)
            conn.commit()
            changed = cursor.rowcount

        if changed == 0:
            # Distinguish a missing row from a lost optimistic race
            self._get_row_exists(table, record_id)
            raise StaleRecord(table, record_id, expected_version)

    def _get_row_exists(self, table: str, record_id: int):
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(f"SELECT 1 FROM {table} WHERE id = ?", (record_id,))
            if cursor.fetchone() is None:
                raise RecordNotFound(table, record_id)
