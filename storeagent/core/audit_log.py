"""
Audit Log Store - append-only tree of task records.

Each command gets a parent entry and one child entry per sub-action. An entry
is created PENDING, collects steps while it is PENDING, and is closed exactly
once as SUCCESS or FAILED. Entries are never deleted.
"""

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from .db import get_db, init_db
from .errors import LogEntryClosed, RecordNotFound
from .schema import TaskLogEntry, TASK_PENDING, TASK_SUCCESS, TASK_FAILED, TASK_STATUSES
from ..util.logging import logger
from . import config

# Distinguishes "no parent filter" from "top-level entries only" (parent_id=None)
ANY_PARENT = object()

_COLUMNS = "id, task_id, task, status, timestamp, updated_at, details, parent_id, agent_name"


def _row_to_entry(row) -> TaskLogEntry:
    return TaskLogEntry(
        id=row["id"],
        task_id=row["task_id"],
        task=row["task"],
        status=row["status"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        details=json.loads(row["details"]) if row["details"] else {},
        parent_id=row["parent_id"],
        agent_name=row["agent_name"],
    )


def _step(action: str, status: str, data: Any = None, error: Optional[str] = None) -> Dict[str, Any]:
    step = {
        "action": action,
        "status": status,
        "timestamp": datetime.now().isoformat(),
    }
    if data is not None:
        step["data"] = data
    if error is not None:
        step["error"] = error
    return step


class AuditLogStore:
    """SQLite-backed task log tree."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DB_PATH
        init_db(self.db_path)

    def log_action(self, task: str, inputs: Optional[Dict[str, Any]] = None,
                   parent_id: Optional[int] = None, agent_name: Optional[str] = None,
                   task_id: Optional[str] = None) -> TaskLogEntry:
        """Create a new PENDING entry."""
        now = datetime.now().isoformat()
        details = {"inputs": inputs or {}, "steps": []}

        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            if parent_id is not None:
                cursor.execute("SELECT id FROM task_logs WHERE id = ?", (parent_id,))
                if cursor.fetchone() is None:
                    raise RecordNotFound("task_logs", parent_id)

            cursor.execute(
                "INSERT INTO task_logs (task_id, task, status, timestamp, updated_at, details, parent_id, agent_name) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (task_id or uuid.uuid4().hex, task, TASK_PENDING, now, now,
                 json.dumps(details, default=str), parent_id, agent_name or config.AGENT_NAME)
            )
            log_id = cursor.lastrowid
            conn.commit()

        return self.get_log(log_id, include_children=False)

    def add_child(self, parent_id: int, task: str, inputs: Optional[Dict[str, Any]] = None,
                  agent_name: Optional[str] = None, task_id: Optional[str] = None) -> TaskLogEntry:
        """Create a PENDING entry under an existing parent."""
        return self.log_action(task, inputs=inputs, parent_id=parent_id, agent_name=agent_name, task_id=task_id)

    def append_step(self, log_id: int, action: str, status: str = "success",
                    data: Any = None, error: Optional[str] = None) -> TaskLogEntry:
        """Append a progress step to a PENDING entry."""
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            row = self._fetch_row(cursor, log_id)
            if row["status"] != TASK_PENDING:
                conn.rollback()
                raise LogEntryClosed(log_id, row["status"])

            details = json.loads(row["details"]) if row["details"] else {}
            details.setdefault("steps", []).append(_step(action, status, data, error))
            cursor.execute(
                "UPDATE task_logs SET details = ?, updated_at = ? WHERE id = ?",
                (json.dumps(details, default=str), datetime.now().isoformat(), log_id)
            )
            conn.commit()

        return self.get_log(log_id, include_children=False)

    def complete(self, log_id: int, status: str, output: Any = None,
                 error: Optional[Dict[str, Any]] = None, final_step: Optional[str] = None) -> TaskLogEntry:
        """Close a PENDING entry as SUCCESS or FAILED. Allowed exactly once."""
        if status not in (TASK_SUCCESS, TASK_FAILED):
            raise ValueError(f"Invalid terminal status: {status}")

        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            row = self._fetch_row(cursor, log_id)
            if row["status"] != TASK_PENDING:
                conn.rollback()
                raise LogEntryClosed(log_id, row["status"])

            details = json.loads(row["details"]) if row["details"] else {}
            if final_step:
                step_status = "success" if status == TASK_SUCCESS else "failed"
                step_error = error.get("message") if error else None
                details.setdefault("steps", []).append(_step(final_step, step_status, error=step_error))
            if output is not None:
                details["output"] = output
            if error is not None:
                details["error"] = error

            cursor.execute(
                "UPDATE task_logs SET status = ?, details = ?, updated_at = ? WHERE id = ? AND status = ?",
                (status, json.dumps(details, default=str), datetime.now().isoformat(), log_id, TASK_PENDING)
            )
            conn.commit()

        logger.log_operation("audit.complete", status, {"log_id": log_id})
        return self.get_log(log_id, include_children=False)

    def get_log(self, log_id: Union[int, str], include_children: bool = True) -> Optional[TaskLogEntry]:
        """Get a single entry by numeric id, or the latest entry for a task_id."""
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            if isinstance(log_id, int):
                cursor.execute(f"SELECT {_COLUMNS} FROM task_logs WHERE id = ?", (log_id,))
            else:
                cursor.execute(
                    f"SELECT {_COLUMNS} FROM task_logs WHERE task_id = ? ORDER BY id DESC LIMIT 1", (log_id,)
                )
            row = cursor.fetchone()

        if row is None:
            return None

        entry = _row_to_entry(row)
        if include_children:
            entry.children = self.get_children(entry.id)
        return entry

    def get_children(self, parent_id: int) -> List[TaskLogEntry]:
        """List direct children of an entry in creation order."""
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {_COLUMNS} FROM task_logs WHERE parent_id = ? ORDER BY id ASC",
                (parent_id,)
            )
            return [_row_to_entry(row) for row in cursor.fetchall()]

    def get_logs(self, status: Optional[str] = None, task_id: Optional[str] = None,
                 parent_id: Any = ANY_PARENT, include_children: bool = False,
                 limit: Optional[int] = None, offset: Optional[int] = None,
                 order: str = "desc") -> List[TaskLogEntry]:
        """Retrieve entries with optional filtering.

        Pass ``parent_id=None`` for top-level entries only.
        """
        if status is not None and status not in TASK_STATUSES:
            raise ValueError(f"Invalid status filter: {status}")
        direction = "ASC" if order.lower() == "asc" else "DESC"

        clauses = []
        args: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            args.append(status)
        if task_id is not None:
            clauses.append("task_id = ?")
            args.append(task_id)
        if parent_id is None:
            clauses.append("parent_id IS NULL")
        elif parent_id is not ANY_PARENT:
            clauses.append("parent_id = ?")
            args.append(parent_id)

        query = f"SELECT {_COLUMNS} FROM task_logs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += f" ORDER BY timestamp {direction}, id {direction}"
        if limit is not None:
            query += " LIMIT ?"
            args.append(limit)
            if offset:
                query += " OFFSET ?"
                args.append(offset)

        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(query, args)
            entries = [_row_to_entry(row) for row in cursor.fetchall()]

        if include_children:
            for entry in entries:
                entry.children = self.get_children(entry.id)
        return entries

    def reduce_status(self, parent_id: int) -> str:
        """SUCCESS iff every child is SUCCESS; a childless parent counts as SUCCESS."""
        children = self.get_children(parent_id)
        if all(child.status == TASK_SUCCESS for child in children):
            return TASK_SUCCESS
        return TASK_FAILED

    def get_stats(self) -> Dict[str, Any]:
        """Counts per status plus the success rate."""
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT status, COUNT(*) FROM task_logs GROUP BY status")
            counts = {row[0]: row[1] for row in cursor.fetchall()}

        total = sum(counts.values())
        success = counts.get(TASK_SUCCESS, 0)
        return {
            "total": total,
            "pending": counts.get(TASK_PENDING, 0),
            "success": success,
            "failed": counts.get(TASK_FAILED, 0),
            "success_rate": f"{(success / total) * 100:.2f}%" if total else "0%",
        }

    def _fetch_row(self, cursor, log_id: int):
        cursor.execute(f"SELECT {_COLUMNS} FROM task_logs WHERE id = ?", (log_id,))
        row = cursor.fetchone()
        if row is None:
            raise RecordNotFound("task_logs", log_id)
        return row
