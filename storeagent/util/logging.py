"""
Structured logging for command orchestration: dispatcher transitions,
action execution, approval lifecycle and tool routing.
"""

import logging
from typing import Any, Dict, List

DEFAULT_SENSITIVE_FIELDS = ['password', 'secret', 'token', 'api_key', 'card_number', 'payload']


class StructuredLogger:
    """Structured logger for orchestration operations."""

    def __init__(self, name: str = "storeagent"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.info(message)

    def log_command_transition(self, task_id: str, state: str, details: Dict[str, Any] = None):
        """Log a dispatcher state transition."""
        log_details = {"task_id": task_id}
        if details:
            log_details.update(details)

        self.log_operation(f"command.{state.lower()}", state, log_details)

    def log_action_execution(self, action_name: str, task_id: str, start_time: float, end_time: float,
                             status: str = "success", error_code: str = None):
        """Log a single action handler run."""
        log_details = {
            "action": action_name,
            "task_id": task_id,
            "duration_ms": round((end_time - start_time) * 1000, 2)
        }
        if error_code:
            log_details["error_code"] = error_code

        self.log_operation(f"action.{action_name}", status, log_details)

    def log_tool_routing(self, instruction: str, resolved: List[str], attempt: int = 1, status: str = "resolved"):
        """Log tool-call adapter routing."""
        log_details = {
            "instruction": instruction[:80] + "..." if len(instruction) > 80 else instruction,
            "resolved": resolved,
            "attempt": attempt
        }
        self.log_operation("adapter.route", status, log_details)

    # Approval lifecycle audit logging
    def log_approval_request(self, request_id: str, action_name: str, requester: str):
        """Log approval request creation."""
        log_details = {
            "request_id": request_id,
            "action": action_name,
            "requester": requester
        }
        self.log_operation("approval.request_created", "pending", log_details)

    def log_approval_consumed(self, request_id: str, action_name: str):
        """Log successful approval redemption."""
        log_details = {
            "request_id": request_id,
            "action": action_name
        }
        self.log_operation("approval.consumed", "consumed", log_details)

    def log_approval_rejected(self, request_id: str, action_name: str, error_code: str):
        """Log a refused redemption attempt."""
        log_details = {
            "request_id": request_id,
            "action": action_name,
            "error_code": error_code
        }
        self.log_operation("approval.redeem", "rejected", log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None,
                sensitive_fields: List[str] = None):
    """General audit event logging with privacy controls."""
    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    if event_type.startswith("approval"):
        operation = "approval"
    elif event_type.startswith("command"):
        operation = "command"
    elif event_type.startswith("action"):
        operation = "action"
    else:
        operation = event_type.replace(".", "_")

    logger.log_operation(operation, "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None,
                     truncate: bool = True) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = DEFAULT_SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields, truncate)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str) and truncate:
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields, truncate) for item in payload]
    else:
        return payload
