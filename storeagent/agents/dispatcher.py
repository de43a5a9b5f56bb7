"""
Command Dispatcher - drives a command through its lifecycle:

    RECEIVED -> ROUTED -> (AWAITING_APPROVAL) -> EXECUTING -> COMPLETED | FAILED

A command gets one parent task log entry and one child entry per resolved
action. Sensitive actions without an approval id stop at AWAITING_APPROVAL and
never run their handler; with an approval id they run only after the broker
has consumed it. Every error in the taxonomy is turned into a result, never
raised to the caller.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.errors import (
    CommandCancelled,
    CommandError,
    HandlerExecutionError,
    NoActionResolved,
    RecordNotFound,
    StaleRecord,
    ValidationError,
)
from ..core.schema import TASK_FAILED, TASK_SUCCESS
from ..util.logging import logger, sanitize_payload
from ..core import config
from .registry import ActionContext


class CommandState(str, Enum):
    RECEIVED = "RECEIVED"
    ROUTED = "ROUTED"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ItemStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    PARTIAL = "PARTIAL"  # aggregate only


@dataclass
class ActionInvocation:
    action_name: str
    params: Dict[str, Any] = field(default_factory=dict)
    approval_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action_name, "params": self.params, "approvalId": self.approval_id}


@dataclass
class Command:
    prompt: Optional[str] = None
    actions: List[ActionInvocation] = field(default_factory=list)
    history: List[Dict[str, str]] = field(default_factory=list)
    approval_id: Optional[str] = None
    task_id: Optional[str] = None
    reason: Optional[str] = None
    agent_name: Optional[str] = None

    @classmethod
    def from_envelope(cls, envelope: Dict[str, Any], registry) -> 'Command':
        """
        Build a command from the inbound envelope
        ``{command | prompt, history?, approvalId?, params?, actions?, taskId?, reason?}``.

        A ``command`` equal to a registered action name is a direct invocation;
        any other text is an instruction for the tool-call adapter.
        """
        text = envelope.get("command") or envelope.get("prompt")
        approval_id = envelope.get("approvalId")
        actions: List[ActionInvocation] = []
        prompt = None

        if envelope.get("actions"):
            for index, raw in enumerate(envelope["actions"]):
                if not isinstance(raw, dict) or not (raw.get("action") or raw.get("name")):
                    raise ValidationError(
                        "Each entry in actions must be an object with an action name",
                        {"errors": [{"field": f"actions.{index}", "message": "missing action"}]}
                    )
                actions.append(ActionInvocation(
                    action_name=raw.get("action") or raw.get("name"),
                    params=raw.get("params") or {},
                    approval_id=raw.get("approvalId"),
                ))
        elif isinstance(text, str) and registry.has(text.strip()):
            actions.append(ActionInvocation(
                action_name=text.strip(),
                params=envelope.get("params") or {},
                approval_id=approval_id,
            ))
        elif isinstance(text, str) and text.strip():
            prompt = text.strip()
        else:
            raise ValidationError(
                "A command, prompt or actions list is required",
                {"errors": [{"field": "command", "message": "required"}]}
            )

        return cls(
            prompt=prompt,
            actions=actions,
            history=list(envelope.get("history") or []),
            approval_id=approval_id,
            task_id=envelope.get("taskId"),
            reason=envelope.get("reason"),
            agent_name=envelope.get("agentName"),
        )


class CancellationToken:
    """Cooperative cancellation flag checked before a command starts executing."""

    def __init__(self):
        self._cancelled = False
        self.reason = None

    def cancel(self, reason: str = "Cancelled by caller"):
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class ItemResult:
    action_name: str
    status: ItemStatus
    log_id: Optional[int] = None
    data: Any = None
    error: Optional[Dict[str, Any]] = None
    approval_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        item = {
            "action": self.action_name,
            "status": self.status.value,
            "logId": self.log_id,
        }
        if self.error is not None:
            item["error"] = self.error
        else:
            item["data"] = self.data
        if self.approval_id:
            item["approvalId"] = self.approval_id
            item["reason"] = self.reason
        return item


@dataclass
class CommandResult:
    task_id: str
    log_id: int
    state: CommandState
    status: ItemStatus
    message: str
    items: List[ItemResult] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    reply: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == ItemStatus.SUCCESS

    @property
    def data(self) -> Any:
        if self.reply is not None:
            return {"reply": self.reply}
        if len(self.items) == 1:
            return self.items[0].data
        return [item.data for item in self.items]

    def to_envelope(self) -> Dict[str, Any]:
        """Outbound envelope returned to HTTP callers."""
        envelope = {
            "success": self.success,
            "status": self.status.value,
            "message": self.message,
            "taskId": self.task_id,
            "logId": self.log_id,
            "items": [item.to_dict() for item in self.items],
        }
        if self.error is not None:
            envelope["error"] = self.error
        else:
            envelope["data"] = self.data

        awaiting = [item for item in self.items if item.status == ItemStatus.AWAITING_APPROVAL]
        if awaiting:
            envelope["approvalId"] = awaiting[0].approval_id
            envelope["requiredAction"] = awaiting[0].action_name
            envelope["reason"] = awaiting[0].reason
        return envelope


def aggregate_status(items: List[ItemResult]) -> ItemStatus:
    statuses = {item.status for item in items}
    if statuses == {ItemStatus.SUCCESS}:
        return ItemStatus.SUCCESS
    if statuses == {ItemStatus.AWAITING_APPROVAL}:
        return ItemStatus.AWAITING_APPROVAL
    if not statuses or statuses == {ItemStatus.FAILED}:
        return ItemStatus.FAILED
    return ItemStatus.PARTIAL


class CommandDispatcher:
    """Runs commands against the registry, approval broker and audit log."""

    def __init__(self, registry, broker, audit_log, store, adapter=None, agent_name: str = None):
        self.registry = registry
        self.broker = broker
        self.audit_log = audit_log
        self.store = store
        self.adapter = adapter
        self.agent_name = agent_name or config.AGENT_NAME

    async def dispatch(self, command: Command, cancel_token: CancellationToken = None) -> CommandResult:
        """Run a command to a terminal state and return its result."""
        token = cancel_token or CancellationToken()
        task_id = command.task_id or uuid.uuid4().hex
        agent_name = command.agent_name or self.agent_name

        parent = self.audit_log.log_action(
            task=self._describe(command),
            inputs=sanitize_payload({
                "prompt": command.prompt,
                "actions": [invocation.to_dict() for invocation in command.actions],
                "approvalId": command.approval_id,
            }, truncate=False),
            agent_name=agent_name,
            task_id=task_id,
        )
        self._transition(parent.id, task_id, CommandState.RECEIVED)

        try:
            self._check_cancelled(token)
            invocations = await self._route(command)
        except NoActionResolved as e:
            if e.reply:
                return self._conversational(parent.id, task_id, e.reply)
            return self._fail_command(parent.id, task_id, e)
        except CommandError as e:
            return self._fail_command(parent.id, task_id, e)
        except Exception as e:
            wrapped = HandlerExecutionError(f"Routing failed: {e}", {"exception": type(e).__name__})
            return self._fail_command(parent.id, task_id, wrapped)

        self._transition(parent.id, task_id, CommandState.ROUTED,
                         {"actions": [invocation.action_name for invocation in invocations]})

        items = []
        for index, invocation in enumerate(invocations):
            item = await self._run_item(invocation, index, command, parent.id, task_id, agent_name, token)
            items.append(item)

        return self._finish(parent.id, task_id, items)

    async def _route(self, command: Command) -> List[ActionInvocation]:
        if command.actions:
            return list(command.actions)
        if self.adapter is None:
            raise NoActionResolved("No tool-call adapter is configured for free-form instructions")
        invocations = await self.adapter.route(command.prompt, command.history)
        if not invocations:
            raise NoActionResolved("The instruction did not resolve to any action")
        return invocations

    async def _run_item(self, invocation: ActionInvocation, index: int, command: Command,
                        parent_id: int, task_id: str, agent_name: str,
                        token: CancellationToken) -> ItemResult:
        name = invocation.action_name
        child = self.audit_log.add_child(
            parent_id,
            task=f"Execute {name}",
            inputs=sanitize_payload({"action": name, "params": invocation.params}, truncate=False),
            agent_name=agent_name,
            task_id=f"{parent_id}:{index}",
        )
        state = CommandState.ROUTED

        try:
            definition = self.registry.resolve(name)
            params = self.registry.validate(name, invocation.params)
            canonical = params.model_dump(by_alias=True, mode="json")
            self._check_cancelled(token)

            if definition.requires_approval:
                approval_id = invocation.approval_id or command.approval_id
                if not approval_id:
                    return self._await_approval(child.id, task_id, name, canonical, command, agent_name)

                self._check_cancelled(token)
                self.broker.consume(approval_id, name, canonical)
                self.audit_log.append_step(child.id, "APPROVAL_CONSUMED", data={"approvalId": approval_id})
            else:
                self._check_cancelled(token)

            state = CommandState.EXECUTING
            self._transition(child.id, task_id, state, {"action": name})
            ctx = ActionContext(store=self.store, audit_log=self.audit_log, agent_name=agent_name, log_id=child.id)
            data = await self._execute(definition, params, ctx, task_id)

        except CommandError as e:
            final = CommandState.CANCELLED if isinstance(e, CommandCancelled) else CommandState.FAILED
            self.audit_log.complete(child.id, TASK_FAILED, error=e.to_dict(), final_step=final.value)
            logger.log_command_transition(task_id, final.value, {"action": name, "code": e.code, "from": state.value})
            return ItemResult(action_name=name, status=ItemStatus.FAILED, log_id=child.id, error=e.to_dict())
        except Exception as e:
            wrapped = HandlerExecutionError(f"Action '{name}' failed: {e}", {"exception": type(e).__name__})
            self.audit_log.complete(child.id, TASK_FAILED, error=wrapped.to_dict(), final_step=CommandState.FAILED.value)
            logger.error(f"Unexpected error while dispatching {name}: {e}")
            return ItemResult(action_name=name, status=ItemStatus.FAILED, log_id=child.id, error=wrapped.to_dict())

        self.audit_log.complete(child.id, TASK_SUCCESS, output=data, final_step=CommandState.COMPLETED.value)
        logger.log_command_transition(task_id, CommandState.COMPLETED.value, {"action": name})
        return ItemResult(action_name=name, status=ItemStatus.SUCCESS, log_id=child.id, data=data)

    def _await_approval(self, log_id: int, task_id: str, name: str, params: Dict[str, Any],
                        command: Command, agent_name: str) -> ItemResult:
        reason = command.reason or f"Action '{name}' requires approval before it can run"
        request = self.broker.request_approval(name, params, reason, requester=agent_name)
        self._transition(log_id, task_id, CommandState.AWAITING_APPROVAL, {"approvalId": request.id})
        self.audit_log.complete(log_id, TASK_SUCCESS, output={
            "outcome": "awaiting_approval",
            "approvalId": request.id,
            "requiredAction": name,
        })
        return ItemResult(
            action_name=name,
            status=ItemStatus.AWAITING_APPROVAL,
            log_id=log_id,
            data={"approvalId": request.id, "requiredAction": name, "reason": reason},
            approval_id=request.id,
            reason=reason,
        )

    async def _execute(self, definition, params, ctx: ActionContext, task_id: str) -> Dict[str, Any]:
        start_time = time.time()
        try:
            result = await definition.handler(params, ctx)
        except CommandError as e:
            logger.log_action_execution(definition.name, task_id, start_time, time.time(), "failed", e.code)
            raise
        except RecordNotFound as e:
            logger.log_action_execution(definition.name, task_id, start_time, time.time(), "failed",
                                        ValidationError.code)
            raise ValidationError(str(e), {"table": e.table, "id": e.record_id}) from e
        except StaleRecord as e:
            logger.log_action_execution(definition.name, task_id, start_time, time.time(), "failed",
                                        HandlerExecutionError.code)
            raise HandlerExecutionError(str(e), {"table": e.table, "id": e.record_id}) from e
        except Exception as e:
            logger.log_action_execution(definition.name, task_id, start_time, time.time(), "failed",
                                        HandlerExecutionError.code)
            raise HandlerExecutionError(
                f"Action '{definition.name}' failed: {e}",
                {"exception": type(e).__name__}
            ) from e

        logger.log_action_execution(definition.name, task_id, start_time, time.time())
        return result if isinstance(result, dict) else {"result": result}

    def _finish(self, parent_id: int, task_id: str, items: List[ItemResult]) -> CommandResult:
        status = aggregate_status(items)
        succeeded = sum(1 for item in items if item.status == ItemStatus.SUCCESS)
        failed = [item for item in items if item.status == ItemStatus.FAILED]

        if status == ItemStatus.SUCCESS:
            state = CommandState.COMPLETED
            message = f"{items[0].action_name} completed" if len(items) == 1 else f"All {len(items)} actions completed"
        elif status == ItemStatus.AWAITING_APPROVAL:
            state = CommandState.AWAITING_APPROVAL
            message = f"Action '{items[0].action_name}' requires approval"
        elif status == ItemStatus.FAILED:
            cancelled = all(item.error["code"] == CommandCancelled.code for item in failed)
            state = CommandState.CANCELLED if cancelled else CommandState.FAILED
            message = failed[0].error["message"]
        else:
            state = CommandState.COMPLETED
            message = f"{succeeded} of {len(items)} actions succeeded"

        error = failed[0].error if status == ItemStatus.FAILED else None
        self.audit_log.complete(
            parent_id,
            self.audit_log.reduce_status(parent_id),
            output={"status": status.value, "items": [item.to_dict() for item in items]},
            error=error,
            final_step=state.value,
        )
        logger.log_command_transition(task_id, state.value, {"status": status.value, "items": len(items)})
        return CommandResult(task_id=task_id, log_id=parent_id, state=state, status=status,
                             message=message, items=items, error=error)

    def _conversational(self, parent_id: int, task_id: str, reply: str) -> CommandResult:
        self.audit_log.complete(parent_id, TASK_SUCCESS, output={"outcome": "conversational", "reply": reply},
                                final_step=CommandState.COMPLETED.value)
        logger.log_command_transition(task_id, CommandState.COMPLETED.value, {"outcome": "conversational"})
        return CommandResult(task_id=task_id, log_id=parent_id, state=CommandState.COMPLETED,
                             status=ItemStatus.SUCCESS, message=reply, reply=reply)

    def _fail_command(self, parent_id: int, task_id: str, error: CommandError) -> CommandResult:
        state = CommandState.CANCELLED if isinstance(error, CommandCancelled) else CommandState.FAILED
        self.audit_log.complete(parent_id, TASK_FAILED, error=error.to_dict(), final_step=state.value)
        logger.log_command_transition(task_id, state.value, {"code": error.code})
        return CommandResult(task_id=task_id, log_id=parent_id, state=state, status=ItemStatus.FAILED,
                             message=error.message, error=error.to_dict())

    def _transition(self, log_id: int, task_id: str, state: CommandState, data: Dict[str, Any] = None):
        self.audit_log.append_step(log_id, state.value, data=data)
        logger.log_command_transition(task_id, state.value, data)

    def _check_cancelled(self, token: CancellationToken):
        if token.cancelled:
            raise CommandCancelled(token.reason or "Command was cancelled")

    def _describe(self, command: Command) -> str:
        if command.prompt:
            return command.prompt[:200]
        names = ", ".join(invocation.action_name for invocation in command.actions)
        return f"Execute {names}"
