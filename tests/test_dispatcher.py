"""
Command dispatcher tests - approval gating, per-item isolation, audit
completeness and cancellation.
"""

import asyncio
import threading
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from storeagent.agents.actions import bulk_schedule_posts
from storeagent.agents.dispatcher import (
    ActionInvocation,
    CancellationToken,
    Command,
    CommandDispatcher,
    CommandState,
    ItemStatus,
)
from storeagent.agents.registry import ActionRegistry, Sensitivity
from storeagent.core.approval import ApprovalBroker
from storeagent.core.errors import NoActionResolved, ValidationError


def no_pending_entries(audit_log):
    return audit_log.get_logs(status="PENDING") == []


def direct(name, params=None, approval_id=None, **kwargs):
    return Command(actions=[ActionInvocation(name, params or {}, approval_id)], **kwargs)


class TestEnvelope:

    def test_registered_action_name_is_direct(self, registry):
        command = Command.from_envelope(
            {"command": "processRefund", "params": {"orderId": 1, "reason": "x"}, "approvalId": "abc"}, registry
        )

        assert command.prompt is None
        assert command.actions[0].action_name == "processRefund"
        assert command.actions[0].approval_id == "abc"

    def test_free_text_is_a_prompt(self, registry):
        command = Command.from_envelope({"command": "please refund order 1", "taskId": "t-1"}, registry)

        assert command.prompt == "please refund order 1"
        assert command.actions == []
        assert command.task_id == "t-1"

    def test_actions_list(self, registry):
        command = Command.from_envelope({"actions": [{"action": "clearCache"}, {"action": "getSiteStatus"}]}, registry)
        assert [a.action_name for a in command.actions] == ["clearCache", "getSiteStatus"]

    def test_empty_envelope_rejected(self, registry):
        with pytest.raises(ValidationError):
            Command.from_envelope({}, registry)


class TestSafeActions:

    @pytest.mark.asyncio
    async def test_safe_action_completes(self, dispatcher, audit_log, store):
        result = await dispatcher.dispatch(direct("clearCache", task_id="task-1"))

        assert result.status == ItemStatus.SUCCESS
        assert result.state == CommandState.COMPLETED
        assert result.task_id == "task-1"
        assert store.get_site_config().last_cache_clear is not None

        parent = audit_log.get_log(result.log_id)
        assert parent.status == "SUCCESS"
        assert [s["action"] for s in parent.details["steps"]] == ["RECEIVED", "ROUTED", "COMPLETED"]
        assert len(parent.children) == 1
        assert parent.children[0].details["steps"][0]["action"] == "EXECUTING"

    @pytest.mark.asyncio
    async def test_unknown_action_fails_without_raising(self, dispatcher, audit_log):
        result = await dispatcher.dispatch(direct("launchRocket"))

        assert result.status == ItemStatus.FAILED
        assert result.error["code"] == "UNKNOWN_ACTION"
        assert audit_log.get_log(result.log_id).status == "FAILED"
        assert no_pending_entries(audit_log)

    @pytest.mark.asyncio
    async def test_validation_error(self, dispatcher, audit_log):
        result = await dispatcher.dispatch(direct("setProductPrice", {"productId": 1, "price": -5}))

        assert result.error["code"] == "VALIDATION_ERROR"
        assert no_pending_entries(audit_log)

    @pytest.mark.asyncio
    async def test_missing_record_is_validation_error(self, dispatcher):
        result = await dispatcher.dispatch(direct("getOrder", {"orderId": 999}))
        assert result.error["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unexpected_handler_error_is_wrapped(self, broker, audit_log, store):
        registry = ActionRegistry()

        async def explode(params, ctx):
            raise RuntimeError("disk on fire")

        registry.register("explode", Sensitivity.SAFE, explode)
        dispatcher = CommandDispatcher(registry, broker, audit_log, store)

        result = await dispatcher.dispatch(direct("explode"))

        assert result.error["code"] == "HANDLER_EXECUTION_ERROR"
        assert result.error["retryable"] is True
        assert "disk on fire" in result.error["message"]
        assert no_pending_entries(audit_log)

    @pytest.mark.asyncio
    async def test_reused_task_id_is_a_correlation_key(self, dispatcher, audit_log):
        first = await dispatcher.dispatch(direct("clearCache", task_id="t-1"))
        second = await dispatcher.dispatch(direct("clearCache", task_id="t-1"))

        assert first.status == second.status == ItemStatus.SUCCESS
        assert first.log_id != second.log_id
        assert [e.id for e in audit_log.get_logs(task_id="t-1", order="asc")] == [first.log_id, second.log_id]
        assert audit_log.get_log("t-1").id == second.log_id

    @pytest.mark.asyncio
    async def test_task_id_shaped_like_a_child_key(self, dispatcher, audit_log):
        first = await dispatcher.dispatch(direct("clearCache", task_id="x"))
        child_key = audit_log.get_log(first.log_id).children[0].task_id

        second = await dispatcher.dispatch(direct("clearCache", task_id=child_key))

        assert second.status == ItemStatus.SUCCESS
        assert no_pending_entries(audit_log)

    @pytest.mark.asyncio
    async def test_child_entry_records_full_params(self, dispatcher, audit_log, delivered_order):
        params = {"orderId": delivered_order.id, "subject": "Your order", "message": "Thanks for waiting. " * 15}

        result = await dispatcher.dispatch(direct("notifyCustomer", params))

        assert result.status == ItemStatus.SUCCESS
        child = audit_log.get_log(result.log_id).children[0]
        assert child.details["inputs"]["params"] == params
        assert len(child.details["inputs"]["params"]["message"]) == 300


class TestApprovalGating:

    @pytest.mark.asyncio
    async def test_sensitive_action_without_approval_never_runs(self, broker, audit_log, store, registry):
        handler = AsyncMock(return_value={})
        gated = ActionRegistry()
        gated.register("processRefund", Sensitivity.APPROVAL_REQUIRED, handler,
                       registry.resolve("processRefund").params_model)
        dispatcher = CommandDispatcher(gated, broker, audit_log, store)

        result = await dispatcher.dispatch(direct("processRefund", {"orderId": 3, "reason": "damaged"}))

        handler.assert_not_called()
        assert result.status == ItemStatus.AWAITING_APPROVAL
        assert result.state == CommandState.AWAITING_APPROVAL
        envelope = result.to_envelope()
        assert envelope["requiredAction"] == "processRefund"
        assert broker.get_request(envelope["approvalId"]).state == "PENDING"
        assert no_pending_entries(audit_log)

    @pytest.mark.asyncio
    async def test_refund_scenario(self, dispatcher, broker, audit_log, store, delivered_order):
        params = {"orderId": delivered_order.id, "reason": "damaged"}

        first = await dispatcher.dispatch(direct("processRefund", params))
        approval_id = first.to_envelope()["approvalId"]
        assert store.get_order(delivered_order.id).status == "DELIVERED"

        second = await dispatcher.dispatch(direct("processRefund", params, approval_id))
        assert second.status == ItemStatus.SUCCESS
        assert store.get_order(delivered_order.id).status == "REFUNDED"
        assert broker.get_request(approval_id).state == "CONSUMED"

        third = await dispatcher.dispatch(direct("processRefund", params, approval_id))
        assert third.status == ItemStatus.FAILED
        assert third.error["code"] == "APPROVAL_ALREADY_CONSUMED"
        assert no_pending_entries(audit_log)

    @pytest.mark.asyncio
    async def test_approval_for_other_action_is_mismatch(self, dispatcher, broker, store, delivered_order):
        approval = broker.request_approval("toggleMaintenance", {"enabled": True}, "deploy")

        result = await dispatcher.dispatch(
            direct("processRefund", {"orderId": delivered_order.id, "reason": "damaged"}, approval.id)
        )

        assert result.error["code"] == "ACTION_MISMATCH"
        assert store.get_order(delivered_order.id).status == "DELIVERED"
        assert broker.get_request(approval.id).state == "PENDING"

    @pytest.mark.asyncio
    async def test_approval_for_other_params_is_mismatch(self, dispatcher, broker, store):
        approval = broker.request_approval("toggleMaintenance", {"enabled": True}, "deploy")

        result = await dispatcher.dispatch(direct("toggleMaintenance", {"enabled": False}, approval.id))

        assert result.error["code"] == "ACTION_MISMATCH"

    @pytest.mark.asyncio
    async def test_unknown_approval_id(self, dispatcher):
        result = await dispatcher.dispatch(direct("toggleMaintenance", {"enabled": True}, "nope"))
        assert result.error["code"] == "APPROVAL_NOT_FOUND"

    def test_concurrent_redemption_runs_handler_once(self, broker, audit_log, store, registry, db_path):
        calls = []

        async def toggle(params, ctx):
            calls.append(params.enabled)
            await asyncio.sleep(0)
            return {"enabled": params.enabled}

        gated = ActionRegistry()
        gated.register("toggleMaintenance", Sensitivity.APPROVAL_REQUIRED, toggle,
                       registry.resolve("toggleMaintenance").params_model)
        approval = broker.request_approval("toggleMaintenance", {"enabled": True}, "deploy")
        barrier = threading.Barrier(2)
        results = []
        lock = threading.Lock()

        def redeem():
            # Each thread runs its own event loop against its own broker
            dispatcher = CommandDispatcher(gated, ApprovalBroker(gated, db_path), audit_log, store)
            barrier.wait()
            result = asyncio.run(dispatcher.dispatch(direct("toggleMaintenance", {"enabled": True}, approval.id)))
            with lock:
                results.append(result)

        threads = [threading.Thread(target=redeem) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(r.status.value for r in results) == ["FAILED", "SUCCESS"]
        failed = next(r for r in results if r.status == ItemStatus.FAILED)
        assert failed.error["code"] == "APPROVAL_ALREADY_CONSUMED"
        assert calls == [True]
        assert no_pending_entries(audit_log)


class TestMultiAction:

    @pytest.mark.asyncio
    async def test_bulk_schedule_with_one_failing_item(self, dispatcher, audit_log, store):
        posts = [store.create_post(f"Post {i}") for i in range(5)]
        store.update_post(posts[2].id, status="PUBLISHED")
        start = datetime.now() + timedelta(days=1)

        result = await dispatcher.dispatch(Command(actions=bulk_schedule_posts([p.id for p in posts], start, "1d")))

        assert result.status == ItemStatus.PARTIAL
        assert [i.status for i in result.items] == [
            ItemStatus.SUCCESS, ItemStatus.SUCCESS, ItemStatus.FAILED, ItemStatus.SUCCESS, ItemStatus.SUCCESS
        ]
        scheduled = [store.get_post(p.id).status for p in posts]
        assert scheduled == ["SCHEDULED", "SCHEDULED", "PUBLISHED", "SCHEDULED", "SCHEDULED"]

        parent = audit_log.get_log(result.log_id)
        assert len(parent.children) == 5
        assert parent.status == "FAILED"
        assert no_pending_entries(audit_log)

    @pytest.mark.asyncio
    async def test_all_awaiting(self, dispatcher, delivered_order):
        command = Command(actions=[
            ActionInvocation("toggleMaintenance", {"enabled": True}),
            ActionInvocation("processRefund", {"orderId": delivered_order.id, "reason": "damaged"}),
        ])
        result = await dispatcher.dispatch(command)

        assert result.status == ItemStatus.AWAITING_APPROVAL
        assert all(item.approval_id for item in result.items)

    @pytest.mark.asyncio
    async def test_mix_of_success_and_awaiting_is_partial(self, dispatcher, audit_log):
        command = Command(actions=[
            ActionInvocation("clearCache"),
            ActionInvocation("toggleMaintenance", {"enabled": True}),
        ])
        result = await dispatcher.dispatch(command)

        assert result.status == ItemStatus.PARTIAL
        assert audit_log.get_log(result.log_id).status == "SUCCESS"


class TestRouting:

    @pytest.mark.asyncio
    async def test_prompt_is_routed_through_adapter(self, registry, broker, audit_log, store):
        adapter = MagicMock()
        adapter.route = AsyncMock(return_value=[ActionInvocation("clearCache", {})])
        dispatcher = CommandDispatcher(registry, broker, audit_log, store, adapter=adapter)

        result = await dispatcher.dispatch(Command(prompt="flush the cache", history=[{"role": "user", "content": "hi"}]))

        adapter.route.assert_awaited_once_with("flush the cache", [{"role": "user", "content": "hi"}])
        assert result.status == ItemStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_conversational_reply(self, registry, broker, audit_log, store):
        adapter = MagicMock()
        adapter.route = AsyncMock(side_effect=NoActionResolved("no tool", reply="Hello there!"))
        dispatcher = CommandDispatcher(registry, broker, audit_log, store, adapter=adapter)

        result = await dispatcher.dispatch(Command(prompt="hello"))

        assert result.status == ItemStatus.SUCCESS
        assert result.items == []
        assert result.to_envelope()["data"] == {"reply": "Hello there!"}
        entry = audit_log.get_log(result.log_id)
        assert entry.status == "SUCCESS"
        assert entry.details["output"]["outcome"] == "conversational"

    @pytest.mark.asyncio
    async def test_no_action_without_reply_fails(self, registry, broker, audit_log, store):
        adapter = MagicMock()
        adapter.route = AsyncMock(side_effect=NoActionResolved("no tool"))
        dispatcher = CommandDispatcher(registry, broker, audit_log, store, adapter=adapter)

        result = await dispatcher.dispatch(Command(prompt="???"))

        assert result.error["code"] == "NO_ACTION_RESOLVED"
        assert audit_log.get_log(result.log_id).status == "FAILED"

    @pytest.mark.asyncio
    async def test_adapter_returning_no_actions(self, registry, broker, audit_log, store):
        adapter = MagicMock()
        adapter.route = AsyncMock(return_value=[])
        dispatcher = CommandDispatcher(registry, broker, audit_log, store, adapter=adapter)

        result = await dispatcher.dispatch(Command(prompt="do something"))

        assert result.status == ItemStatus.FAILED
        assert result.error["code"] == "NO_ACTION_RESOLVED"
        assert audit_log.get_log(result.log_id).children == []
        assert no_pending_entries(audit_log)

    @pytest.mark.asyncio
    async def test_prompt_without_adapter(self, dispatcher):
        result = await dispatcher.dispatch(Command(prompt="refund order 1"))
        assert result.error["code"] == "NO_ACTION_RESOLVED"


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, dispatcher, audit_log, store):
        token = CancellationToken()
        token.cancel()

        result = await dispatcher.dispatch(direct("clearCache"), cancel_token=token)

        assert result.state == CommandState.CANCELLED
        assert result.error["code"] == "COMMAND_CANCELLED"
        assert store.get_site_config().last_cache_clear is None
        assert no_pending_entries(audit_log)

    @pytest.mark.asyncio
    async def test_cancellation_does_not_consume_approval(self, dispatcher, broker, delivered_order):
        approval = broker.request_approval("processRefund", {"orderId": delivered_order.id, "reason": "x"}, "r")
        token = CancellationToken()
        token.cancel()

        await dispatcher.dispatch(
            direct("processRefund", {"orderId": delivered_order.id, "reason": "x"}, approval.id), cancel_token=token
        )
        assert broker.get_request(approval.id).state == "PENDING"

    @pytest.mark.asyncio
    async def test_cancel_during_handler_still_completes(self, broker, audit_log, store):
        token = CancellationToken()
        registry = ActionRegistry()

        async def slow(params, ctx):
            token.cancel()
            return {"done": True}

        registry.register("first", Sensitivity.SAFE, slow)
        registry.register("second", Sensitivity.SAFE, AsyncMock(return_value={}))
        dispatcher = CommandDispatcher(registry, broker, audit_log, store)

        result = await dispatcher.dispatch(
            Command(actions=[ActionInvocation("first"), ActionInvocation("second")]), cancel_token=token
        )

        assert result.items[0].status == ItemStatus.SUCCESS
        assert result.items[1].error["code"] == "COMMAND_CANCELLED"
        assert result.status == ItemStatus.PARTIAL
        assert no_pending_entries(audit_log)
