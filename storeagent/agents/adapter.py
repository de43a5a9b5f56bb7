"""
Tool-Call Adapter - turns a free-form instruction into structured action
invocations by asking an LLM collaborator to pick registered tools.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

from ..core.errors import (
    AmbiguousInstruction,
    CommandError,
    LLMTimeout,
    NoActionResolved,
    UnknownAction,
)
from ..util.logging import logger
from ..core import config
from .dispatcher import ActionInvocation
from .llm import LLMReply, ToolCall

CORRECTIVE_PROMPT = (
    "{instruction}\n\n"
    "Your previous answer could not be executed: {problem}. "
    "Call only the listed tools, by exact name, with arguments as a JSON object that matches the tool's parameters."
)


class ToolCallAdapter:
    """Routes instructions through a ToolCaller with one corrective retry."""

    def __init__(self, registry, caller, timeout: float = None, history_turns: int = None):
        self.registry = registry
        self.caller = caller
        self.timeout = timeout if timeout is not None else config.LLM_TIMEOUT_SEC
        self.history_turns = history_turns if history_turns is not None else config.LLM_HISTORY_TURNS

    async def route(self, instruction: str, history: Optional[List[Dict[str, str]]] = None) -> List[ActionInvocation]:
        """
        Resolve an instruction into invocations.

        Raises:
            NoActionResolved: the model answered without calling a tool
            AmbiguousInstruction: the corrective retry was still malformed
            LLMTimeout: the collaborator did not answer within the timeout
        """
        history = self._trim_history(history or [])
        tools = self.registry.list_available()

        reply = await self._call(instruction, tools, history)
        problem = self._check(reply)
        if problem is None:
            return self._finish(instruction, reply, attempt=1)

        logger.log_tool_routing(instruction, [c.name for c in reply.tool_calls], attempt=1, status="malformed")
        retry = await self._call(CORRECTIVE_PROMPT.format(instruction=instruction, problem=problem), tools, history)
        retry_problem = self._check(retry)
        if retry_problem is None:
            return self._finish(instruction, retry, attempt=2)

        logger.log_tool_routing(instruction, [c.name for c in retry.tool_calls], attempt=2, status="ambiguous")
        raise AmbiguousInstruction(
            "Could not resolve the instruction into a valid action",
            {"instruction": instruction, "problem": retry_problem}
        )

    async def _call(self, instruction: str, tools: List[Dict[str, Any]], history: List[Dict[str, str]]) -> LLMReply:
        try:
            return await asyncio.wait_for(self.caller.call(instruction, tools, history), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.log_tool_routing(instruction, [], status="timeout")
            raise LLMTimeout(f"LLM did not respond within {self.timeout}s", {"timeout_sec": self.timeout})

    def _finish(self, instruction: str, reply: LLMReply, attempt: int) -> List[ActionInvocation]:
        if not reply.tool_calls:
            logger.log_tool_routing(instruction, [], attempt=attempt, status="no_action")
            raise NoActionResolved("No action was resolved from the instruction", reply=reply.text or "")

        invocations = [
            ActionInvocation(action_name=call.name, params=self._arguments(call))
            for call in reply.tool_calls
        ]
        logger.log_tool_routing(instruction, [i.action_name for i in invocations], attempt=attempt)
        return invocations

    def _check(self, reply: LLMReply) -> Optional[str]:
        """Describe the first malformed tool call, or None if all are usable."""
        for call in reply.tool_calls:
            arguments = self._arguments(call)
            if not isinstance(arguments, dict):
                return f"arguments for '{call.name}' are not a JSON object"
            try:
                self.registry.validate(call.name, arguments)
            except UnknownAction:
                return f"unknown tool '{call.name}'"
            except CommandError as e:
                return f"invalid arguments for '{call.name}': {e.details.get('errors', e.message)}"
        return None

    def _arguments(self, call: ToolCall) -> Any:
        arguments = call.arguments
        if arguments is None:
            return {}
        if isinstance(arguments, str):
            try:
                return json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                return arguments
        return arguments

    def _trim_history(self, history: List[Dict[str, str]]) -> List[Dict[str, str]]:
        if self.history_turns <= 0:
            return []
        return list(history[-self.history_turns:])
