"""
LLM tool-calling collaborators used by the tool-call adapter.

OllamaToolCaller talks to a local Ollama instance with native tool calling.
RuleBasedToolCaller resolves common admin instructions with keyword rules and
needs no model; it is used for development, tests and when no LLM is configured.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import ollama

from ..core.errors import HandlerExecutionError
from ..core import config

SYSTEM_PROMPT = (
    "You are the operations agent of an e-commerce admin platform. "
    "Resolve the operator's instruction into calls of the provided tools. "
    "Use exact tool names and pass arguments as a JSON object matching the tool's parameters. "
    "If the instruction is a question you can answer without a tool, reply in plain text."
)


@dataclass
class ToolCall:
    name: str
    arguments: Any


@dataclass
class LLMReply:
    tool_calls: List[ToolCall] = field(default_factory=list)
    text: str = ""


class ToolCaller(Protocol):
    async def call(self, instruction: str, tools: List[Dict[str, Any]],
                   history: List[Dict[str, str]]) -> LLMReply:
        ...


def _tool_spec(tool: Dict[str, Any]) -> Dict[str, Any]:
    """Registry capability -> function-calling tool definition."""
    return {
        "type": "function",
        "function": {
            "name": tool["name"],
            "description": tool.get("description", ""),
            "parameters": tool.get("parameters", {"type": "object", "properties": {}}),
        },
    }


class OllamaToolCaller:
    """Tool caller backed by ``ollama.AsyncClient``."""

    def __init__(self, model: str = None, host: str = None, client=None):
        self.model = model or config.OLLAMA_MODEL
        self.client = client or ollama.AsyncClient(host=host or config.OLLAMA_HOST)

    async def call(self, instruction: str, tools: List[Dict[str, Any]],
                   history: List[Dict[str, str]]) -> LLMReply:
        messages = self._build_messages(instruction, history)

        try:
            response = await self.client.chat(
                model=self.model,
                messages=messages,
                tools=[_tool_spec(tool) for tool in tools],
                options={'temperature': 0}
            )
        except ollama.ResponseError as e:
            raise HandlerExecutionError(f"Ollama model error: {e}", {"model": self.model})
        except ConnectionError as e:
            raise HandlerExecutionError(f"Ollama is not reachable: {e}", {"host": config.OLLAMA_HOST})

        message = response.get('message', {}) or {}
        calls = []
        for raw in message.get('tool_calls') or []:
            function = raw.get('function', {}) or {}
            calls.append(ToolCall(name=function.get('name', ''), arguments=function.get('arguments')))

        return LLMReply(tool_calls=calls, text=message.get('content') or "")

    def _build_messages(self, instruction: str, history: List[Dict[str, str]]) -> List[Dict[str, str]]:
        messages = [{'role': 'system', 'content': SYSTEM_PROMPT}]
        for turn in history:
            messages.append({'role': turn.get('role', 'user'), 'content': turn.get('content', '')})
        messages.append({'role': 'user', 'content': instruction})
        return messages


def _number(pattern: str, text: str) -> Optional[int]:
    match = re.search(pattern, text)
    return int(match.group(1)) if match else None


def _reason(text: str, default: str) -> str:
    match = re.search(r"\b(?:because|reason:?|due to)\s+(.+)$", text)
    return match.group(1).strip().rstrip(".") if match else default


class RuleBasedToolCaller:
    """
    Deterministic keyword router.

    Each clause of an instruction (split on ";" or "and then") is matched
    against the rules below; the first rule that fires produces one tool call.
    """

    GREETING_REPLY = "Hello! I can manage orders, products, posts, tickets and site settings."
    FALLBACK_REPLY = "I couldn't map that to a store operation. Try e.g. 'refund order 42 because damaged'."

    def __init__(self):
        self.rules = [
            self._maintenance,
            self._cache,
            self._site_status,
            self._refund,
            self._cancel,
            self._notify,
            self._order_status,
            self._pending_orders,
            self._order,
            self._low_stock,
            self._stock,
            self._price,
            self._product,
            self._schedule_post,
            self._publish,
            self._close_ticket,
            self._assign_ticket,
            self._ticket_priority,
            self._logs,
        ]

    async def call(self, instruction: str, tools: List[Dict[str, Any]],
                   history: List[Dict[str, str]]) -> LLMReply:
        available = {tool["name"] for tool in tools}
        calls = []
        for clause in re.split(r";|\band then\b", instruction):
            text = clause.strip().lower()
            if not text:
                continue
            for rule in self.rules:
                resolved = rule(text)
                if resolved is not None:
                    if resolved.name in available:
                        calls.append(resolved)
                    break

        if calls:
            return LLMReply(tool_calls=calls)
        if re.match(r"^\s*(hi|hello|hey)\b", instruction.lower()):
            return LLMReply(text=self.GREETING_REPLY)
        return LLMReply(text=self.FALLBACK_REPLY)

    # Site

    def _maintenance(self, text):
        if "maintenance" not in text:
            return None
        if re.search(r"\b(off|disable|deactivate|stop)\b", text):
            return ToolCall("toggleMaintenance", {"enabled": False})
        if re.search(r"\b(on|enable|activate|start)\b", text):
            return ToolCall("toggleMaintenance", {"enabled": True})
        return None

    def _cache(self, text):
        if re.search(r"\b(clear|flush|purge)\b.*\bcache\b", text):
            return ToolCall("clearCache", {})
        return None

    def _site_status(self, text):
        if re.search(r"\bsite status\b|\bstatus of the site\b", text):
            return ToolCall("getSiteStatus", {})
        return None

    # Orders

    def _refund(self, text):
        order_id = _number(r"refund\D*?(\d+)", text)
        if order_id is None:
            return None
        return ToolCall("processRefund", {"orderId": order_id, "reason": _reason(text, "Requested by operator")})

    def _cancel(self, text):
        order_id = _number(r"cancel\s+order\D*?(\d+)", text)
        if order_id is None:
            return None
        return ToolCall("cancelOrder", {"orderId": order_id, "reason": _reason(text, "Cancelled by operator")})

    def _notify(self, text):
        order_id = _number(r"(?:notify|email)\b.*?order\D*?(\d+)", text)
        if order_id is None:
            return None
        message = re.search(r"\b(?:that|saying)\s+(.+)$", text)
        body = message.group(1).strip() if message else "There is an update on your order."
        return ToolCall("notifyCustomer", {"orderId": order_id, "subject": "Order update", "message": body})

    def _order_status(self, text):
        match = re.search(r"order\D*?(\d+).*?status to (\w+)", text)
        if not match:
            return None
        return ToolCall("updateOrderStatus", {"orderId": int(match.group(1)), "status": match.group(2).upper()})

    def _pending_orders(self, text):
        if "pending orders" in text:
            return ToolCall("getPendingOrders", {})
        return None

    def _order(self, text):
        order_id = _number(r"\border\D*?(\d+)", text)
        if order_id is None:
            return None
        return ToolCall("getOrder", {"orderId": order_id})

    # Products

    def _low_stock(self, text):
        if "low stock" not in text and "running low" not in text:
            return None
        threshold = _number(r"(?:below|under|than)\s+(\d+)", text)
        return ToolCall("getLowStockProducts", {"threshold": threshold if threshold is not None else 10})

    def _stock(self, text):
        match = re.search(r"stock\b.*?product\D*?(\d+)\D+?(\d+)", text)
        if not match:
            return None
        return ToolCall("updateProductStock", {"productId": int(match.group(1)), "stock": int(match.group(2))})

    def _price(self, text):
        match = re.search(r"price\b.*?product\D*?(\d+)\D+?(\d+(?:\.\d+)?)", text)
        if not match:
            return None
        return ToolCall("setProductPrice", {"productId": int(match.group(1)), "price": float(match.group(2))})

    def _product(self, text):
        product_id = _number(r"\bproduct\D*?(\d+)", text)
        if product_id is None:
            return None
        return ToolCall("getProduct", {"productId": product_id})

    # Posts

    def _schedule_post(self, text):
        match = re.search(r"schedule\s+post\D*?(\d+)\s+(?:for|at)\s+(\S+)", text)
        if not match:
            return None
        return ToolCall("schedulePost", {"postId": int(match.group(1)), "publishAt": match.group(2).upper()})

    def _publish(self, text):
        post_id = _number(r"publish\s+post\D*?(\d+)", text)
        if post_id is None:
            return None
        return ToolCall("publishPost", {"postId": post_id})

    # Tickets

    def _close_ticket(self, text):
        ticket_id = _number(r"close\s+ticket\D*?(\d+)", text)
        if ticket_id is None:
            return None
        resolution = re.search(r"\b(?:with|resolution:?)\s+(.+)$", text)
        return ToolCall("closeTicket", {
            "ticketId": ticket_id,
            "resolution": resolution.group(1).strip() if resolution else "Resolved by agent",
        })

    def _assign_ticket(self, text):
        match = re.search(r"assign\s+ticket\D*?(\d+)\s+to\s+(\S+)", text)
        if not match:
            return None
        return ToolCall("assignTicket", {"ticketId": int(match.group(1)), "assignee": match.group(2)})

    def _ticket_priority(self, text):
        match = re.search(r"ticket\D*?(\d+).*?\b(low|medium|high|urgent)\b", text)
        if not match or "priority" not in text:
            return None
        return ToolCall("updateTicketPriority", {"ticketId": int(match.group(1)), "priority": match.group(2).upper()})

    def _logs(self, text):
        if not re.search(r"\b(logs?|activity)\b", text):
            return None
        status = re.search(r"\b(failed|success|pending)\b", text)
        arguments = {"status": status.group(1).upper()} if status else {}
        return ToolCall("getAgentLogs", arguments)


def build_tool_caller(provider: str = None):
    """Tool caller for the configured LLM_PROVIDER (ollama|mock)."""
    provider = provider or config.get_llm_provider()
    if provider == "ollama":
        return OllamaToolCaller()
    if provider == "mock":
        return RuleBasedToolCaller()
    raise ValueError(f"Unsupported LLM provider: {provider}")
