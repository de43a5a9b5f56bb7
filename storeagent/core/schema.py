"""
Typed records returned by the audit log and the store.
"""

from dataclasses import dataclass, asdict, field
from datetime import datetime
from typing import Any, Dict, List, Optional

TASK_PENDING = "PENDING"
TASK_SUCCESS = "SUCCESS"
TASK_FAILED = "FAILED"
TASK_STATUSES = [TASK_PENDING, TASK_SUCCESS, TASK_FAILED]

ORDER_STATUSES = ["PENDING", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED", "REFUNDED"]
POST_STATUSES = ["DRAFT", "SCHEDULED", "PUBLISHED", "TRASHED"]
TICKET_STATUSES = ["OPEN", "IN_PROGRESS", "CLOSED"]
TICKET_PRIORITIES = ["LOW", "MEDIUM", "HIGH", "URGENT"]


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


def _to_dict(record) -> Dict[str, Any]:
    return {k: _iso(v) for k, v in asdict(record).items()}


@dataclass
class TaskLogEntry:
    id: int
    task_id: str
    task: str
    status: str  # PENDING, SUCCESS, FAILED
    timestamp: datetime
    updated_at: datetime
    details: Dict[str, Any]
    agent_name: str
    parent_id: Optional[int] = None
    children: List["TaskLogEntry"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "task": self.task,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "details": self.details,
            "agent_name": self.agent_name,
            "parent_id": self.parent_id,
            "children": [child.to_dict() for child in self.children],
        }


@dataclass
class OrderRecord:
    id: int
    order_ref: str
    customer_name: Optional[str]
    customer_email: str
    items: List[Dict[str, Any]]
    total: float
    status: str
    created_at: datetime
    updated_at: datetime
    version: int

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


@dataclass
class ProductRecord:
    id: int
    name: str
    slug: str
    price: float
    stock: int
    available: bool
    updated_at: datetime
    version: int

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


@dataclass
class PostRecord:
    id: int
    title: str
    slug: str
    status: str
    published_at: Optional[datetime]
    updated_at: datetime
    version: int

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


@dataclass
class TicketRecord:
    id: int
    subject: str
    customer_email: str
    status: str
    priority: str
    assigned_to: Optional[str]
    resolution: Optional[str]
    updated_at: datetime
    version: int

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


@dataclass
class SiteConfigRecord:
    maintenance_mode: bool
    last_cache_clear: Optional[datetime]
    updated_at: datetime
    version: int

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


@dataclass
class NotificationRecord:
    id: int
    order_id: int
    recipient: str
    subject: str
    message: str
    sent_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)
