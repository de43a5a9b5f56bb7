"""
Error taxonomy for command orchestration.

Every error carries a stable ``code`` used in result envelopes and audit
entries. Only ``HandlerExecutionError`` and ``LLMTimeout`` are retryable by the
caller; the dispatcher itself never retries.
"""

from typing import Any, Dict, Optional


class CommandError(Exception):
    """Base class for all recoverable orchestration errors."""

    code = "COMMAND_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class UnknownAction(CommandError):
    code = "UNKNOWN_ACTION"


class DuplicateAction(CommandError):
    code = "DUPLICATE_ACTION"


class NotSensitive(CommandError):
    code = "NOT_SENSITIVE"


class ApprovalNotFound(CommandError):
    code = "APPROVAL_NOT_FOUND"


class ApprovalAlreadyConsumed(CommandError):
    code = "APPROVAL_ALREADY_CONSUMED"


class ApprovalExpired(CommandError):
    code = "APPROVAL_EXPIRED"


class ActionMismatch(CommandError):
    code = "ACTION_MISMATCH"


class ValidationError(CommandError):
    code = "VALIDATION_ERROR"


class HandlerExecutionError(CommandError):
    code = "HANDLER_EXECUTION_ERROR"
    retryable = True


class NoActionResolved(CommandError):
    """The LLM answered without calling a tool. ``reply`` holds its text, if any."""

    code = "NO_ACTION_RESOLVED"

    def __init__(self, message: str, reply: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.reply = reply


class AmbiguousInstruction(CommandError):
    code = "AMBIGUOUS_INSTRUCTION"


class LLMTimeout(CommandError):
    code = "LLM_TIMEOUT"
    retryable = True


class CommandCancelled(CommandError):
    code = "COMMAND_CANCELLED"


# Store-level errors raised by the persistence collaborator

class RecordNotFound(Exception):
    def __init__(self, table: str, record_id: Any):
        super().__init__(f"{table} record {record_id} not found")
        self.table = table
        self.record_id = record_id


class StaleRecord(Exception):
    def __init__(self, table: str, record_id: Any, expected_version: int):
        super().__init__(f"{table} record {record_id} changed since version {expected_version}")
        self.table = table
        self.record_id = record_id
        self.expected_version = expected_version


class LogEntryClosed(Exception):
    """Raised when a terminal task log entry is mutated again."""

    def __init__(self, log_id: int, status: str):
        super().__init__(f"Task log {log_id} is already {status}")
        self.log_id = log_id
        self.status = status
