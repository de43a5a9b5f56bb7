"""
Action catalog - the store operations the agent may perform.

Each action is an async handler ``(params, ctx) -> dict`` with a static params
model. ``build_default_registry`` wires them into an ActionRegistry.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field, field_validator

from ..core.errors import RecordNotFound, ValidationError
from .dispatcher import ActionInvocation
from .registry import ActionContext, ActionParams, ActionRegistry, NoParams, Sensitivity

OrderStatus = Literal["PENDING", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED", "REFUNDED"]
TicketPriority = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]

REFUNDABLE_STATUSES = ("DELIVERED", "PENDING")

_INTERVAL_PATTERN = re.compile(r"^(\d+)([dhm])$")
_INTERVAL_UNITS = {"d": "days", "h": "hours", "m": "minutes"}


def _now_like(value: datetime) -> datetime:
    """Current time with the same awareness as ``value``."""
    if value.tzinfo is not None:
        return datetime.now(timezone.utc)
    return datetime.now()


# Parameter models

class MaintenanceParams(ActionParams):
    enabled: bool


class OrderParams(ActionParams):
    order_id: int = Field(gt=0)


class PendingOrdersParams(ActionParams):
    limit: Optional[int] = Field(default=None, gt=0)


class OrderStatusParams(ActionParams):
    order_id: int = Field(gt=0)
    status: OrderStatus


class OrderReasonParams(ActionParams):
    order_id: int = Field(gt=0)
    reason: str = Field(min_length=1)


class NotifyCustomerParams(ActionParams):
    order_id: int = Field(gt=0)
    subject: str = Field(min_length=1)
    message: str = Field(min_length=1)


class ProductParams(ActionParams):
    product_id: int = Field(gt=0)


class ProductStockParams(ActionParams):
    product_id: int = Field(gt=0)
    stock: int = Field(ge=0)


class ProductPriceParams(ActionParams):
    product_id: int = Field(gt=0)
    price: float = Field(gt=0)


class ProductAvailabilityParams(ActionParams):
    product_id: int = Field(gt=0)
    available: bool


class LowStockParams(ActionParams):
    threshold: int = Field(default=10, ge=0)


class PostParams(ActionParams):
    post_id: int = Field(gt=0)


class SchedulePostParams(ActionParams):
    post_id: int = Field(gt=0)
    publish_at: datetime

    @field_validator("publish_at")
    @classmethod
    def publish_at_in_future(cls, v):
        if v <= _now_like(v):
            raise ValueError("publishAt must be in the future")
        return v


class TicketParams(ActionParams):
    ticket_id: int = Field(gt=0)


class OpenTicketsParams(ActionParams):
    limit: Optional[int] = Field(default=None, gt=0)


class CloseTicketParams(ActionParams):
    ticket_id: int = Field(gt=0)
    resolution: str = Field(min_length=1)


class TicketPriorityParams(ActionParams):
    ticket_id: int = Field(gt=0)
    priority: TicketPriority


class AssignTicketParams(ActionParams):
    ticket_id: int = Field(gt=0)
    assignee: str = Field(min_length=1)


class AgentLogsParams(ActionParams):
    status: Optional[Literal["PENDING", "SUCCESS", "FAILED"]] = None
    limit: int = Field(default=20, gt=0, le=200)


class LogParams(ActionParams):
    log_id: int = Field(gt=0)


# Site control

async def get_site_status(params: NoParams, ctx: ActionContext) -> Dict[str, Any]:
    site = ctx.store.get_site_config()
    return {"site": site.to_dict(), "counts": ctx.store.counts()}


async def toggle_maintenance(params: MaintenanceParams, ctx: ActionContext) -> Dict[str, Any]:
    site = ctx.store.get_site_config()
    if site.maintenance_mode == params.enabled:
        ctx.step("Maintenance mode already set", {"enabled": params.enabled})
        return {"maintenanceMode": params.enabled, "changed": False}

    ctx.step("Updating maintenance mode", {"enabled": params.enabled})
    site = ctx.store.update_site_config(maintenance_mode=params.enabled)
    return {"maintenanceMode": site.maintenance_mode, "changed": True}


async def clear_cache(params: NoParams, ctx: ActionContext) -> Dict[str, Any]:
    site = ctx.store.update_site_config(last_cache_clear=datetime.now())
    ctx.step("Cache cleared")
    return {"lastCacheClear": site.last_cache_clear.isoformat()}


# Orders

async def get_order(params: OrderParams, ctx: ActionContext) -> Dict[str, Any]:
    return {"order": ctx.store.get_order(params.order_id).to_dict()}


async def get_pending_orders(params: PendingOrdersParams, ctx: ActionContext) -> Dict[str, Any]:
    orders = ctx.store.list_orders(status="PENDING", limit=params.limit)
    return {"orders": [order.to_dict() for order in orders], "count": len(orders)}


async def update_order_status(params: OrderStatusParams, ctx: ActionContext) -> Dict[str, Any]:
    order = ctx.store.get_order(params.order_id)
    ctx.step(f"Updating order status to {params.status}", {"from": order.status})
    order = ctx.store.update_order(order.id, expected_version=order.version, status=params.status)
    return {"order": order.to_dict()}


async def process_refund(params: OrderReasonParams, ctx: ActionContext) -> Dict[str, Any]:
    order = ctx.store.get_order(params.order_id)
    if order.status == "REFUNDED":
        ctx.step("Order already refunded")
        return {"order": order.to_dict(), "alreadyRefunded": True}

    if order.status not in REFUNDABLE_STATUSES:
        raise ValidationError(
            f"Order with status {order.status} is not eligible for refund",
            {"orderId": order.id, "status": order.status}
        )

    ctx.step("Updating order status to REFUNDED", {"reason": params.reason})
    order = ctx.store.update_order(order.id, expected_version=order.version, status="REFUNDED")
    ctx.store.add_notification(
        order.id, order.customer_email,
        f"Refund processed for {order.order_ref}",
        f"Your refund of {order.total:.2f} has been processed. Reason: {params.reason}"
    )
    return {"order": order.to_dict(), "refundedAmount": order.total, "alreadyRefunded": False}


async def cancel_order(params: OrderReasonParams, ctx: ActionContext) -> Dict[str, Any]:
    order = ctx.store.get_order(params.order_id)
    if order.status == "CANCELLED":
        ctx.step("Order already cancelled")
        return {"order": order.to_dict(), "alreadyCancelled": True}

    if order.status == "DELIVERED":
        raise ValidationError(
            "Cannot cancel a delivered order. Use refund instead.",
            {"orderId": order.id, "status": order.status}
        )

    ctx.step("Cancelling order", {"reason": params.reason})
    order = ctx.store.update_order(order.id, expected_version=order.version, status="CANCELLED")
    return {"order": order.to_dict(), "alreadyCancelled": False}


async def notify_customer(params: NotifyCustomerParams, ctx: ActionContext) -> Dict[str, Any]:
    order = ctx.store.get_order(params.order_id)
    notification = ctx.store.add_notification(order.id, order.customer_email, params.subject, params.message)
    ctx.step("Notification recorded", {"recipient": order.customer_email})
    return {"notification": notification.to_dict()}


# Products

async def get_product(params: ProductParams, ctx: ActionContext) -> Dict[str, Any]:
    return {"product": ctx.store.get_product(params.product_id).to_dict()}


async def update_product_stock(params: ProductStockParams, ctx: ActionContext) -> Dict[str, Any]:
    product = ctx.store.get_product(params.product_id)
    ctx.step("Updating stock", {"from": product.stock, "to": params.stock})
    product = ctx.store.update_product(product.id, expected_version=product.version, stock=params.stock)
    return {"product": product.to_dict()}


async def set_product_price(params: ProductPriceParams, ctx: ActionContext) -> Dict[str, Any]:
    product = ctx.store.get_product(params.product_id)
    ctx.step("Updating price", {"from": product.price, "to": params.price})
    product = ctx.store.update_product(product.id, expected_version=product.version, price=params.price)
    return {"product": product.to_dict()}


async def get_low_stock_products(params: LowStockParams, ctx: ActionContext) -> Dict[str, Any]:
    products = ctx.store.list_low_stock_products(params.threshold)
    return {"products": [p.to_dict() for p in products], "threshold": params.threshold}


async def toggle_product_availability(params: ProductAvailabilityParams, ctx: ActionContext) -> Dict[str, Any]:
    product = ctx.store.get_product(params.product_id)
    if product.available == params.available:
        ctx.step("Availability already set", {"available": params.available})
        return {"product": product.to_dict(), "changed": False}

    ctx.step("Updating availability", {"available": params.available})
    product = ctx.store.update_product(product.id, expected_version=product.version, available=params.available)
    return {"product": product.to_dict(), "changed": True}


# Posts

async def schedule_post(params: SchedulePostParams, ctx: ActionContext) -> Dict[str, Any]:
    post = ctx.store.get_post(params.post_id)
    if post.status == "PUBLISHED":
        raise ValidationError(f"Post {post.id} is already published", {"postId": post.id})

    ctx.step("Scheduling post", {"publishAt": params.publish_at.isoformat()})
    post = ctx.store.update_post(
        post.id, expected_version=post.version, status="SCHEDULED", published_at=params.publish_at
    )
    return {"post": post.to_dict()}


async def publish_post(params: PostParams, ctx: ActionContext) -> Dict[str, Any]:
    post = ctx.store.get_post(params.post_id)
    if post.status == "PUBLISHED":
        ctx.step("Post is already published")
        return {"post": post.to_dict(), "alreadyPublished": True}

    ctx.step("Publishing post")
    post = ctx.store.update_post(
        post.id, expected_version=post.version, status="PUBLISHED", published_at=datetime.now()
    )
    return {"post": post.to_dict(), "alreadyPublished": False}


# Tickets

async def get_ticket(params: TicketParams, ctx: ActionContext) -> Dict[str, Any]:
    return {"ticket": ctx.store.get_ticket(params.ticket_id).to_dict()}


async def get_open_tickets(params: OpenTicketsParams, ctx: ActionContext) -> Dict[str, Any]:
    tickets = ctx.store.list_tickets(status="OPEN", limit=params.limit)
    return {"tickets": [ticket.to_dict() for ticket in tickets], "count": len(tickets)}


async def close_ticket(params: CloseTicketParams, ctx: ActionContext) -> Dict[str, Any]:
    ticket = ctx.store.get_ticket(params.ticket_id)
    if ticket.status == "CLOSED":
        ctx.step("Ticket is already closed")
        return {"ticket": ticket.to_dict(), "alreadyClosed": True}

    ctx.step("Closing ticket with resolution")
    ticket = ctx.store.update_ticket(
        ticket.id, expected_version=ticket.version, status="CLOSED", resolution=params.resolution
    )
    return {"ticket": ticket.to_dict(), "alreadyClosed": False}


async def reopen_ticket(params: TicketParams, ctx: ActionContext) -> Dict[str, Any]:
    ticket = ctx.store.get_ticket(params.ticket_id)
    if ticket.status == "OPEN":
        ctx.step("Ticket is already open")
        return {"ticket": ticket.to_dict(), "alreadyOpen": True}

    ctx.step("Reopening ticket", {"from": ticket.status})
    ticket = ctx.store.update_ticket(ticket.id, expected_version=ticket.version, status="OPEN", resolution=None)
    return {"ticket": ticket.to_dict(), "alreadyOpen": False}


async def update_ticket_priority(params: TicketPriorityParams, ctx: ActionContext) -> Dict[str, Any]:
    ticket = ctx.store.get_ticket(params.ticket_id)
    ticket = ctx.store.update_ticket(ticket.id, expected_version=ticket.version, priority=params.priority)
    return {"ticket": ticket.to_dict()}


async def assign_ticket(params: AssignTicketParams, ctx: ActionContext) -> Dict[str, Any]:
    ticket = ctx.store.get_ticket(params.ticket_id)
    fields = {"assigned_to": params.assignee}
    if ticket.status == "OPEN":
        fields["status"] = "IN_PROGRESS"
    ticket = ctx.store.update_ticket(ticket.id, expected_version=ticket.version, **fields)
    return {"ticket": ticket.to_dict()}


# Logs

async def get_agent_logs(params: AgentLogsParams, ctx: ActionContext) -> Dict[str, Any]:
    entries = ctx.audit_log.get_logs(status=params.status, parent_id=None, limit=params.limit)
    return {"logs": [entry.to_dict() for entry in entries], "count": len(entries)}


async def get_log_by_id(params: LogParams, ctx: ActionContext) -> Dict[str, Any]:
    entry = ctx.audit_log.get_log(params.log_id, include_children=True)
    if entry is None:
        raise RecordNotFound("task_logs", params.log_id)
    return {"log": entry.to_dict()}


def build_default_registry(registry: Optional[ActionRegistry] = None) -> ActionRegistry:
    """Register the full action catalog."""
    registry = registry or ActionRegistry()
    safe = Sensitivity.SAFE
    approval = Sensitivity.APPROVAL_REQUIRED

    registry.register("getSiteStatus", safe, get_site_status,
                      description="Get maintenance mode, last cache clear and record counts")
    registry.register("toggleMaintenance", approval, toggle_maintenance, MaintenanceParams,
                      "Turn site maintenance mode on or off")
    registry.register("clearCache", safe, clear_cache, description="Clear the site cache")

    registry.register("getOrder", safe, get_order, OrderParams, "Get an order by id")
    registry.register("getPendingOrders", safe, get_pending_orders, PendingOrdersParams,
                      "List orders that are still pending")
    registry.register("updateOrderStatus", safe, update_order_status, OrderStatusParams,
                      "Change the status of an order")
    registry.register("processRefund", approval, process_refund, OrderReasonParams,
                      "Refund a delivered or pending order")
    registry.register("cancelOrder", safe, cancel_order, OrderReasonParams,
                      "Cancel an order that has not been delivered")
    registry.register("notifyCustomer", safe, notify_customer, NotifyCustomerParams,
                      "Send an email notification to the customer of an order")

    registry.register("getProduct", safe, get_product, ProductParams, "Get a product by id")
    registry.register("updateProductStock", safe, update_product_stock, ProductStockParams,
                      "Set the stock level of a product")
    registry.register("setProductPrice", safe, set_product_price, ProductPriceParams,
                      "Set the price of a product")
    registry.register("getLowStockProducts", safe, get_low_stock_products, LowStockParams,
                      "List products at or below a stock threshold")
    registry.register("toggleProductAvailability", safe, toggle_product_availability, ProductAvailabilityParams,
                      "Make a product available or unavailable for sale")

    registry.register("schedulePost", safe, schedule_post, SchedulePostParams,
                      "Schedule a blog post for future publication")
    registry.register("publishPost", safe, publish_post, PostParams, "Publish a blog post now")

    registry.register("getTicket", safe, get_ticket, TicketParams, "Get a support ticket by id")
    registry.register("getOpenTickets", safe, get_open_tickets, OpenTicketsParams,
                      "List support tickets that are still open")
    registry.register("closeTicket", safe, close_ticket, CloseTicketParams,
                      "Close a support ticket with a resolution")
    registry.register("reopenTicket", safe, reopen_ticket, TicketParams, "Reopen a closed support ticket")
    registry.register("updateTicketPriority", safe, update_ticket_priority, TicketPriorityParams,
                      "Change the priority of a support ticket")
    registry.register("assignTicket", safe, assign_ticket, AssignTicketParams,
                      "Assign a support ticket to a team member")

    registry.register("getAgentLogs", safe, get_agent_logs, AgentLogsParams,
                      "List recent agent task logs")
    registry.register("getLogById", safe, get_log_by_id, LogParams,
                      "Get one agent task log with its child entries")
    return registry


# Bulk scheduling

def parse_interval(interval: str) -> timedelta:
    """Parse ``"1d"``, ``"2h"`` or ``"30m"`` into a timedelta."""
    match = _INTERVAL_PATTERN.match(interval or "")
    if not match:
        raise ValidationError(
            "Invalid interval format. Use format like '1d', '2h', or '30m'",
            {"errors": [{"field": "interval", "message": "expected <number><d|h|m>"}]}
        )
    amount, unit = match.groups()
    return timedelta(**{_INTERVAL_UNITS[unit]: int(amount)})


def bulk_schedule_posts(post_ids: List[int], start: datetime, interval: str) -> list:
    """Expand a bulk schedule request into one schedulePost invocation per post."""

    if not post_ids:
        raise ValidationError("postIds must not be empty", {"errors": [{"field": "postIds", "message": "empty"}]})
    if start <= _now_like(start):
        raise ValidationError(
            "Start date must be in the future",
            {"errors": [{"field": "startDate", "message": "must be in the future"}]}
        )

    step = parse_interval(interval)
    return [
        ActionInvocation(
            action_name="schedulePost",
            params={"postId": post_id, "publishAt": (start + step * index).isoformat()},
        )
        for index, post_id in enumerate(post_ids)
    ]
