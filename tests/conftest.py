"""
Shared fixtures: every test gets its own SQLite file under tmp_path.
"""

import pytest

from storeagent.agents.actions import build_default_registry
from storeagent.agents.dispatcher import CommandDispatcher
from storeagent.core.approval import ApprovalBroker
from storeagent.core.audit_log import AuditLogStore
from storeagent.core.store import CommerceStore


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "store.db")


@pytest.fixture
def store(db_path):
    return CommerceStore(db_path)


@pytest.fixture
def audit_log(db_path):
    return AuditLogStore(db_path)


@pytest.fixture
def registry():
    return build_default_registry()


@pytest.fixture
def broker(registry, db_path):
    return ApprovalBroker(registry, db_path, ttl_seconds=3600)


@pytest.fixture
def dispatcher(registry, broker, audit_log, store):
    return CommandDispatcher(registry, broker, audit_log, store, agent_name="test-agent")


@pytest.fixture
def delivered_order(store):
    return store.create_order("grace@example.com", [{"sku": "CAP-03", "qty": 1}], 15.0,
                              customer_name="Grace Hopper", status="DELIVERED")
