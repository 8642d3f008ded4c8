"""Shared fixtures for FlowDoc tests.

Stores are created per test under tmp_path so every case gets an isolated
SQLite file and connection pool.
"""

import pytest

from flowdoc.catalog_index import CatalogIndex, IndexSnapshot
from flowdoc.models import CatalogSnapshot, NodeDescriptor
from flowdoc.persistence import KnowledgeStore
from flowdoc.tools import ToolContext

SMALL_CATALOG = [
    {
        "name": "n8n-nodes-base.webhook",
        "displayName": "Webhook",
        "description": "Starts the workflow on an HTTP request",
        "category": "trigger",
        "trigger": True,
        "inputs": [],
    },
    {
        "name": "n8n-nodes-base.set",
        "displayName": "Edit Fields (Set)",
        "description": "Set or rename item fields",
        "category": "transform",
    },
    {
        "name": "n8n-nodes-base.slack",
        "displayName": "Slack",
        "description": "Send messages to Slack channels",
        "category": "action",
        "credentialRequirements": [{"name": "slackApi", "required": True}],
    },
]


def make_index(descriptors, revision: str = "rev-test") -> IndexSnapshot:
    return IndexSnapshot(CatalogSnapshot(revision=revision, descriptors=tuple(descriptors)))


@pytest.fixture
def build_index():
    """Factory for index snapshots over ad-hoc descriptor records."""

    def build(records, revision: str = "rev-test") -> IndexSnapshot:
        return make_index([NodeDescriptor.model_validate(r) for r in records], revision)

    return build


@pytest.fixture
def small_catalog() -> list[NodeDescriptor]:
    """webhook (trigger, 0 in / 1 out), set (1 in / 1 out), slack (requires slackApi)."""
    return [NodeDescriptor.model_validate(record) for record in SMALL_CATALOG]


@pytest.fixture
def small_index(small_catalog) -> IndexSnapshot:
    return make_index(small_catalog)


@pytest.fixture
async def store(tmp_path):
    """Empty knowledge store backed by a temp database."""
    store = KnowledgeStore(tmp_path / "nodes.db")
    yield store
    await store.close_pool()


@pytest.fixture
async def synced_store(store, small_catalog):
    result = await store.sync(small_catalog, "rev-1")
    assert result.ok
    return store


@pytest.fixture
def tool_context(synced_store) -> ToolContext:
    return ToolContext(store=synced_store, index=CatalogIndex(synced_store))
