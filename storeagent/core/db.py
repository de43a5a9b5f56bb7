"""
SQLite foundation for the audit log, approval table and store records.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator, Optional

from . import config


@contextmanager
def get_db(db_path: Optional[str] = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(db_path or config.DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: Optional[str] = None):
    """Initialize the database with required tables."""
    config.ensure_db_directory(db_path)

    with get_db(db_path) as conn:
        cursor = conn.cursor()

        # Audit trail: append-only tree of task records
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS task_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id TEXT NOT NULL,
                task TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'PENDING',
                timestamp TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                details TEXT NOT NULL DEFAULT '{}',
                parent_id INTEGER REFERENCES task_logs(id),
                agent_name TEXT NOT NULL
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_task_logs_parent ON task_logs(parent_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_task_logs_task_id ON task_logs(task_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_task_logs_status_ts ON task_logs(status, timestamp DESC)')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS approvals (
                id TEXT PRIMARY KEY,
                action_name TEXT NOT NULL,
                params TEXT NOT NULL DEFAULT '{}',
                reason TEXT NOT NULL,
                requester TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'PENDING',
                created_at TIMESTAMP NOT NULL,
                expires_at TIMESTAMP,
                consumed_at TIMESTAMP
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_approvals_state ON approvals(state, created_at)')

        # Domain records touched by action handlers
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_ref TEXT NOT NULL UNIQUE,
                customer_name TEXT,
                customer_email TEXT NOT NULL,
                items TEXT NOT NULL DEFAULT '[]',
                total REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'PENDING',
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                version INTEGER NOT NULL DEFAULT 1
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS products (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                slug TEXT NOT NULL UNIQUE,
                price REAL NOT NULL,
                stock INTEGER NOT NULL DEFAULT 0,
                available BOOLEAN NOT NULL DEFAULT TRUE,
                updated_at TIMESTAMP NOT NULL,
                version INTEGER NOT NULL DEFAULT 1
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS posts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                slug TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL DEFAULT 'DRAFT',
                published_at TIMESTAMP,
                updated_at TIMESTAMP NOT NULL,
                version INTEGER NOT NULL DEFAULT 1
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS tickets (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                subject TEXT NOT NULL,
                customer_email TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'OPEN',
                priority TEXT NOT NULL DEFAULT 'MEDIUM',
                assigned_to TEXT,
                resolution TEXT,
                updated_at TIMESTAMP NOT NULL,
                version INTEGER NOT NULL DEFAULT 1
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS site_config (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                maintenance_mode BOOLEAN NOT NULL DEFAULT FALSE,
                last_cache_clear TIMESTAMP,
                updated_at TIMESTAMP NOT NULL,
                version INTEGER NOT NULL DEFAULT 1
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_id INTEGER NOT NULL REFERENCES orders(id),
                recipient TEXT NOT NULL,
                subject TEXT NOT NULL,
                message TEXT NOT NULL,
                sent_at TIMESTAMP NOT NULL
            )
        ''')

        conn.commit()


def health_check(db_path: Optional[str] = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]

            required_tables = ['task_logs', 'approvals', 'orders', 'products', 'posts', 'tickets', 'site_config']
            return all(table in table_names for table in required_tables)
    except Exception:
        return False
