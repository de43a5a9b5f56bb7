"""
Approval Broker - issues single-use approval tokens for sensitive actions and
redeems them at most once.

Redemption is a compare-and-swap on the ``state`` column, so two concurrent
``consume`` calls on the same id yield exactly one success and one
``ApprovalAlreadyConsumed``.
"""

import json
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .db import get_db, init_db
from .errors import (
    ActionMismatch,
    ApprovalAlreadyConsumed,
    ApprovalExpired,
    ApprovalNotFound,
    NotSensitive,
)
from ..util.logging import logger
from . import config

STATE_PENDING = "PENDING"
STATE_CONSUMED = "CONSUMED"
STATE_EXPIRED = "EXPIRED"


@dataclass
class ApprovalRequest:
    id: str
    action_name: str
    params: Dict[str, Any]
    reason: str
    requester: str
    state: str  # PENDING, CONSUMED, EXPIRED
    created_at: datetime
    expires_at: Optional[datetime] = None
    consumed_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary for storage and responses."""
        data = asdict(self)
        for key in ('created_at', 'expires_at', 'consumed_at'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'ApprovalRequest':
        """Create from dictionary (for loading from storage)."""
        data = dict(data)
        for key in ('created_at', 'expires_at', 'consumed_at'):
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        if isinstance(data.get('params'), str):
            data['params'] = json.loads(data['params'])
        return cls(**data)

    def is_past_ttl(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class ApprovalBroker:
    """Persists approval requests and guarantees at-most-once redemption."""

    def __init__(self, registry, db_path: Optional[str] = None, ttl_seconds: Optional[int] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.registry = registry
        self.db_path = db_path or config.DB_PATH
        self.ttl_seconds = config.get_approval_ttl() if ttl_seconds is None else ttl_seconds
        self._clock = clock
        init_db(self.db_path)

    def request_approval(self, action_name: str, params: Optional[Dict[str, Any]], reason: str,
                         requester: str = None) -> ApprovalRequest:
        """Create a PENDING approval request for a sensitive action."""
        definition = self.registry.resolve(action_name)
        if not definition.requires_approval:
            raise NotSensitive(
                f"Action '{action_name}' does not require approval",
                {"action": action_name}
            )

        canonical = self.registry.canonical_params(action_name, params)
        created_at = self._clock()
        expires_at = created_at + timedelta(seconds=self.ttl_seconds) if self.ttl_seconds > 0 else None

        request = ApprovalRequest(
            id=uuid.uuid4().hex,
            action_name=action_name,
            params=canonical,
            reason=reason or f"Action '{action_name}' requires approval",
            requester=requester or config.AGENT_NAME,
            state=STATE_PENDING,
            created_at=created_at,
            expires_at=expires_at,
        )

        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO approvals (id, action_name, params, reason, requester, state, created_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (request.id, request.action_name, json.dumps(request.params), request.reason,
                 request.requester, request.state, created_at.isoformat(),
                 expires_at.isoformat() if expires_at else None)
            )
            conn.commit()

        logger.log_approval_request(request.id, action_name, request.requester)
        return request

    def consume(self, approval_id: str, action_name: str,
                params: Optional[Dict[str, Any]] = None) -> ApprovalRequest:
        """
        Redeem an approval for ``action_name``.

        Args:
            approval_id: Token returned by request_approval
            action_name: Action about to be executed
            params: When given, must match the approved params exactly

        Returns:
            The request in CONSUMED state
        """
        request = self.get_request(approval_id)
        if request is None:
            logger.log_approval_rejected(approval_id, action_name, ApprovalNotFound.code)
            raise ApprovalNotFound(f"Approval {approval_id} not found", {"approval_id": approval_id})

        try:
            self._check_redeemable(request, action_name, params)
        except Exception as e:
            logger.log_approval_rejected(approval_id, action_name, getattr(e, "code", type(e).__name__))
            raise

        now = self._clock()
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE approvals SET state = ?, consumed_at = ? WHERE id = ? AND state = ? AND action_name = ?",
                (STATE_CONSUMED, now.isoformat(), approval_id, STATE_PENDING, action_name)
            )
            conn.commit()
            won = cursor.rowcount == 1

        if not won:
            # Another redemption (or the expiry sweep) got there first
            current = self.get_request(approval_id)
            logger.log_approval_rejected(approval_id, action_name, "CAS_LOST")
            if current is not None and current.state == STATE_EXPIRED:
                raise ApprovalExpired(f"Approval {approval_id} has expired", {"approval_id": approval_id})
            raise ApprovalAlreadyConsumed(
                f"Approval {approval_id} has already been used",
                {"approval_id": approval_id}
            )

        logger.log_approval_consumed(approval_id, action_name)
        request.state = STATE_CONSUMED
        request.consumed_at = now
        return request

    def get_request(self, approval_id: str) -> Optional[ApprovalRequest]:
        """Get an approval request by ID."""
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM approvals WHERE id = ?", (approval_id,))
            row = cursor.fetchone()
        return ApprovalRequest.from_dict(dict(row)) if row else None

    def list_pending(self) -> List[ApprovalRequest]:
        """List PENDING requests that are still within their TTL."""
        now = self._clock()
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM approvals WHERE state = ? ORDER BY created_at ASC", (STATE_PENDING,))
            requests = [ApprovalRequest.from_dict(dict(row)) for row in cursor.fetchall()]
        return [r for r in requests if not r.is_past_ttl(now)]

    def expire_stale(self) -> int:
        """Mark over-TTL PENDING requests EXPIRED and return how many changed."""
        now = self._clock()
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE approvals SET state = ? WHERE state = ? AND expires_at IS NOT NULL AND expires_at <= ?",
                (STATE_EXPIRED, STATE_PENDING, now.isoformat())
            )
            conn.commit()
            expired = cursor.rowcount

        if expired:
            logger.log_operation("approval.expire_sweep", "expired", {"count": expired})
        return expired

    def stats(self) -> Dict[str, int]:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT state, COUNT(*) FROM approvals GROUP BY state")
            counts = {row[0]: row[1] for row in cursor.fetchall()}
        return {
            "pending": counts.get(STATE_PENDING, 0),
            "consumed": counts.get(STATE_CONSUMED, 0),
            "expired": counts.get(STATE_EXPIRED, 0),
        }

    def _check_redeemable(self, request: ApprovalRequest, action_name: str,
                          params: Optional[Dict[str, Any]]):
        if request.state == STATE_CONSUMED:
            raise ApprovalAlreadyConsumed(
                f"Approval {request.id} has already been used",
                {"approval_id": request.id}
            )

        if request.state == STATE_EXPIRED or request.is_past_ttl(self._clock()):
            self._mark_expired(request.id)
            raise ApprovalExpired(f"Approval {request.id} has expired", {"approval_id": request.id})

        if request.action_name != action_name:
            raise ActionMismatch(
                f"Approval {request.id} was issued for '{request.action_name}', not '{action_name}'",
                {"approval_id": request.id, "approved_action": request.action_name, "requested_action": action_name}
            )

        if params is not None and self.registry.canonical_params(action_name, params) != request.params:
            raise ActionMismatch(
                f"Approval {request.id} was issued for different parameters",
                {"approval_id": request.id, "approved_params": request.params}
            )

    def _mark_expired(self, approval_id: str):
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE approvals SET state = ? WHERE id = ? AND state = ?",
                (STATE_EXPIRED, approval_id, STATE_PENDING)
            )
            conn.commit()
