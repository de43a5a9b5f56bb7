"""
Action Registry - maps action names to handlers, declared parameter models
and a sensitivity classification.

The registry is an explicit object built once at startup and handed to the
approval broker, the dispatcher and the tool-call adapter. Each action declares
a static pydantic params model that is validated before the handler runs.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..core.errors import DuplicateAction, UnknownAction, ValidationError
from ..util.logging import logger


class Sensitivity(str, Enum):
    SAFE = "SAFE"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"


class ActionParams(BaseModel):
    """Base for action parameter models: camelCase on the wire, no stray keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class NoParams(ActionParams):
    pass


@dataclass
class ActionContext:
    """Collaborators available to a handler while it runs."""
    store: Any
    audit_log: Any
    agent_name: str
    log_id: Optional[int] = None

    def step(self, action: str, data: Any = None):
        """Record a progress step on the entry for this invocation."""
        if self.audit_log is not None and self.log_id is not None:
            self.audit_log.append_step(self.log_id, action, data=data)


Handler = Callable[[ActionParams, ActionContext], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class ActionDefinition:
    name: str
    sensitivity: Sensitivity
    handler: Handler
    params_model: Type[ActionParams] = NoParams
    description: str = ""

    @property
    def requires_approval(self) -> bool:
        return self.sensitivity == Sensitivity.APPROVAL_REQUIRED

    def describe(self) -> Dict[str, Any]:
        """Public capability description; never includes the handler."""
        return {
            "name": self.name,
            "description": self.description,
            "sensitivity": self.sensitivity.value,
            "parameters": self.params_model.model_json_schema(by_alias=True),
        }


class ActionRegistry:
    """
    Registry of every action the dispatcher may execute.

    Provides:
    - Registration with duplicate detection
    - Name resolution
    - Capability listing for the tool-call adapter
    - Parameter validation against each action's declared model
    """

    def __init__(self):
        self._actions: Dict[str, ActionDefinition] = {}

    def register(self, name: str, sensitivity: Sensitivity, handler: Handler,
                 params_model: Type[ActionParams] = NoParams, description: str = "") -> ActionDefinition:
        """
        Register a new action.

        Args:
            name: Unique action name
            sensitivity: SAFE or APPROVAL_REQUIRED
            handler: async callable taking (params, ctx)
            params_model: pydantic model describing accepted parameters
            description: Human-readable description for tool catalogs

        Returns:
            The immutable ActionDefinition
        """
        if name in self._actions:
            raise DuplicateAction(f"Action '{name}' is already registered", {"action": name})

        definition = ActionDefinition(
            name=name,
            sensitivity=Sensitivity(sensitivity),
            handler=handler,
            params_model=params_model,
            description=description,
        )
        self._actions[name] = definition
        logger.log_operation("registry.register", "success", {
            "action": name,
            "sensitivity": definition.sensitivity.value
        })
        return definition

    def resolve(self, name: str) -> ActionDefinition:
        definition = self._actions.get(name)
        if definition is None:
            raise UnknownAction(f"Unknown action: {name}", {"action": name})
        return definition

    def has(self, name: str) -> bool:
        return name in self._actions

    def names(self) -> List[str]:
        return list(self._actions)

    def list_available(self) -> List[Dict[str, Any]]:
        """Capability list exposed to the LLM collaborator."""
        return [definition.describe() for definition in self._actions.values()]

    def validate(self, name: str, params: Optional[Dict[str, Any]]) -> ActionParams:
        """Validate raw params against the action's declared model."""
        definition = self.resolve(name)
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise ValidationError(
                f"Parameters for '{name}' must be an object",
                {"action": name, "errors": [{"field": "", "message": "expected an object"}]}
            )

        try:
            return definition.params_model.model_validate(params)
        except PydanticValidationError as e:
            errors = [
                {
                    "field": ".".join(str(part) for part in error["loc"]),
                    "message": error["msg"],
                }
                for error in e.errors()
            ]
            raise ValidationError(f"Invalid parameters for '{name}'", {"action": name, "errors": errors})

    def canonical_params(self, name: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Validated params in their wire form, used to bind approvals to arguments."""
        return self.validate(name, params).model_dump(by_alias=True, mode="json")

    def __contains__(self, name: str) -> bool:
        return self.has(name)

    def __len__(self) -> int:
        return len(self._actions)
