"""
Action registry tests - registration, resolution, capability listing and
parameter validation.
"""

from dataclasses import FrozenInstanceError

import pytest
from pydantic import Field

from storeagent.agents.registry import ActionParams, ActionRegistry, Sensitivity
from storeagent.core.errors import DuplicateAction, UnknownAction, ValidationError


class PingParams(ActionParams):
    target_host: str
    count: int = Field(default=1, gt=0)


async def ping(params, ctx):
    return {"host": params.target_host}


@pytest.fixture
def small_registry():
    registry = ActionRegistry()
    registry.register("ping", Sensitivity.SAFE, ping, PingParams, "Ping a host")
    return registry


class TestRegistration:

    def test_register_and_resolve(self, small_registry):
        definition = small_registry.resolve("ping")

        assert definition.name == "ping"
        assert definition.sensitivity == Sensitivity.SAFE
        assert not definition.requires_approval
        assert "ping" in small_registry
        assert len(small_registry) == 1

    def test_duplicate_name_rejected(self, small_registry):
        with pytest.raises(DuplicateAction):
            small_registry.register("ping", Sensitivity.APPROVAL_REQUIRED, ping, PingParams)

    def test_sensitivity_accepts_string(self):
        registry = ActionRegistry()
        definition = registry.register("wipe", "APPROVAL_REQUIRED", ping)
        assert definition.requires_approval

    def test_unknown_action(self, small_registry):
        assert not small_registry.has("pong")
        with pytest.raises(UnknownAction):
            small_registry.resolve("pong")

    def test_definitions_are_immutable(self, small_registry):
        definition = small_registry.resolve("ping")
        with pytest.raises(FrozenInstanceError):
            definition.sensitivity = Sensitivity.APPROVAL_REQUIRED


class TestCapabilities:

    def test_list_available_describes_parameters(self, small_registry):
        [capability] = small_registry.list_available()

        assert capability["name"] == "ping"
        assert capability["description"] == "Ping a host"
        assert capability["sensitivity"] == "SAFE"
        assert "targetHost" in capability["parameters"]["properties"]
        assert capability["parameters"]["required"] == ["targetHost"]
        assert "handler" not in capability

    def test_default_catalog(self, registry):
        names = set(registry.names())

        assert {"processRefund", "toggleMaintenance", "clearCache", "schedulePost", "getAgentLogs"} <= names
        sensitive = {d["name"] for d in registry.list_available() if d["sensitivity"] == "APPROVAL_REQUIRED"}
        assert sensitive == {"processRefund", "toggleMaintenance"}


class TestValidation:

    def test_camel_case_params(self, small_registry):
        params = small_registry.validate("ping", {"targetHost": "db-1", "count": 3})
        assert params.target_host == "db-1"
        assert params.count == 3

    def test_missing_field(self, small_registry):
        with pytest.raises(ValidationError) as exc_info:
            small_registry.validate("ping", {})

        assert exc_info.value.details["errors"][0]["field"] == "targetHost"

    def test_unexpected_field(self, small_registry):
        with pytest.raises(ValidationError):
            small_registry.validate("ping", {"targetHost": "db-1", "force": True})

    def test_non_object_params(self, small_registry):
        with pytest.raises(ValidationError):
            small_registry.validate("ping", ["db-1"])

    def test_canonical_params_fill_defaults(self, small_registry):
        assert small_registry.canonical_params("ping", {"target_host": "db-1"}) == {
            "targetHost": "db-1",
            "count": 1,
        }
