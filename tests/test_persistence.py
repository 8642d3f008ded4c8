"""Tests for the SQLite knowledge store."""

import asyncio
import sqlite3

import aiosqlite
import pytest

from flowdoc.models import NodeDescriptor
from flowdoc.persistence import KnowledgeStore


def make_descriptor(name, **fields):
    return NodeDescriptor.model_validate({"name": name, **fields})


class TestEmptyStore:
    @pytest.mark.asyncio
    async def test_is_empty(self, store):
        assert await store.is_empty()
        assert await store.get_sync_metadata() is None
        stats = await store.stats()
        assert stats.total_count == 0
        assert stats.revision is None

    @pytest.mark.asyncio
    async def test_schema_created(self, store, tmp_path):
        await store.is_empty()
        conn = sqlite3.connect(tmp_path / "nodes.db")
        try:
            tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
            indexes = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        finally:
            conn.close()
        assert {"nodes", "sync_metadata"} <= tables
        assert {"idx_nodes_category", "idx_nodes_name"} <= indexes
        assert mode == "wal"


class TestSync:
    @pytest.mark.asyncio
    async def test_sync_replaces_catalog(self, store, small_catalog):
        result = await store.sync(small_catalog, "rev-1")
        assert result.ok and result.changed
        assert result.count == 3

        result = await store.sync([make_descriptor("only.one", category="misc")], "rev-2")
        assert result.ok
        assert [d.name for d in await store.get_all()] == ["only.one"]
        assert await store.get_revision() == "rev-2"

    @pytest.mark.asyncio
    async def test_sync_is_idempotent(self, store, small_catalog):
        await store.sync(small_catalog, "rev-1")
        stats_before = await store.stats()
        records_before = {d.name: await store.get(d.name) for d in small_catalog}

        result = await store.sync(small_catalog, "rev-1")
        assert result.ok
        assert not result.changed

        assert await store.stats() == stats_before
        for name, descriptor in records_before.items():
            assert await store.get(name) == descriptor

    @pytest.mark.asyncio
    async def test_failed_sync_leaves_catalog_untouched(self, store, small_catalog):
        await store.sync(small_catalog, "rev-1")
        stats_before = await store.stats()

        # Duplicate names violate the UNIQUE constraint after the delete has run
        broken = [make_descriptor("dup.node"), make_descriptor("dup.node", description="again")]
        result = await store.sync(broken, "rev-2")

        assert not result.ok
        assert result.retryable
        assert "UNIQUE" in result.error
        assert await store.stats() == stats_before
        assert await store.get("dup.node") is None
        assert await store.get("n8n-nodes-base.slack") is not None

    @pytest.mark.asyncio
    async def test_retry_after_failure_succeeds(self, store, small_catalog):
        await store.sync([make_descriptor("a"), make_descriptor("a")], "rev-1")
        result = await store.sync(small_catalog, "rev-1")
        assert result.ok
        assert (await store.stats()).total_count == 3

    @pytest.mark.asyncio
    async def test_sync_empty_catalog(self, store, small_catalog):
        await store.sync(small_catalog, "rev-1")
        result = await store.sync([], "rev-empty")
        assert result.ok
        assert await store.is_empty()
        assert await store.get_revision() == "rev-empty"

    @pytest.mark.asyncio
    async def test_clear(self, synced_store):
        await synced_store.clear()
        assert await synced_store.is_empty()
        assert await synced_store.get_revision() is None


class TestReads:
    @pytest.mark.asyncio
    async def test_get_exact_and_case_insensitive(self, synced_store):
        assert (await synced_store.get("n8n-nodes-base.slack")).display_name == "Slack"
        assert (await synced_store.get("N8N-NODES-BASE.SLACK")).name == "n8n-nodes-base.slack"
        assert await synced_store.get("missing") is None

    @pytest.mark.asyncio
    async def test_get_preserves_descriptor(self, synced_store, small_catalog):
        slack = next(d for d in small_catalog if d.short_name == "slack")
        assert await synced_store.get(slack.name) == slack

    @pytest.mark.asyncio
    async def test_get_record(self, synced_store):
        record = await synced_store.get_record("n8n-nodes-base.set")
        assert record.revision == "rev-1"
        assert record.descriptor.category == "transform"
        assert record.last_updated is not None

    @pytest.mark.asyncio
    async def test_search(self, synced_store):
        names = [d.name for d in await synced_store.search("slack")]
        assert names == ["n8n-nodes-base.slack"]
        assert [d.name for d in await synced_store.search("HTTP request")] == ["n8n-nodes-base.webhook"]

    @pytest.mark.asyncio
    async def test_search_escapes_wildcards(self, synced_store):
        assert await synced_store.search("%") == []
        assert await synced_store.search("_") == []

    @pytest.mark.asyncio
    async def test_by_category(self, synced_store):
        assert [d.name for d in await synced_store.by_category("trigger")] == ["n8n-nodes-base.webhook"]
        assert await synced_store.by_category("nope") == []

    @pytest.mark.asyncio
    async def test_stats(self, synced_store):
        stats = await synced_store.stats()
        assert stats.total_count == 3
        assert stats.per_category == {"action": 1, "transform": 1, "trigger": 1}
        assert stats.revision == "rev-1"
        assert stats.last_sync is not None

    @pytest.mark.asyncio
    async def test_snapshot(self, synced_store):
        snapshot = await synced_store.snapshot()
        meta = await synced_store.get_sync_metadata()
        assert snapshot.marker == (meta.revision, meta.last_sync)
        assert [d.name for d in snapshot.descriptors] == sorted(d.name for d in snapshot.descriptors)
        assert len(snapshot.descriptors) == 3


class TestPool:
    @pytest.mark.asyncio
    async def test_reopen_after_close(self, tmp_path, small_catalog):
        store = KnowledgeStore(tmp_path / "nodes.db")
        await store.sync(small_catalog, "rev-1")
        await store.close_pool()

        reopened = KnowledgeStore(tmp_path / "nodes.db")
        try:
            assert (await reopened.stats()).total_count == 3
        finally:
            await reopened.close_pool()


class TestReadIsolation:
    """Readers see the committed catalog while another connection holds the write lock."""

    @pytest.mark.asyncio
    async def test_readers_not_blocked_by_open_write(self, synced_store):
        writer = await aiosqlite.connect(synced_store.db_path)
        try:
            await writer.execute("BEGIN IMMEDIATE")
            await writer.execute("DELETE FROM nodes")
            await writer.execute(
                "INSERT INTO nodes (name, metadata, category, last_updated) VALUES (?, ?, ?, ?)",
                ("x.new", make_descriptor("x.new").model_dump_json(by_alias=True), "misc",
                 "2026-01-01T00:00:00+00:00"),
            )
            await writer.execute("UPDATE sync_metadata SET revision = 'rev-2' WHERE id = 1")

            # Well under the busy timeout, so a blocked reader fails the test
            get = await asyncio.wait_for(synced_store.get("n8n-nodes-base.slack"), timeout=1)
            stats = await asyncio.wait_for(synced_store.stats(), timeout=1)
            snapshot = await asyncio.wait_for(synced_store.snapshot(), timeout=1)
            assert get is not None
            assert await synced_store.get("x.new") is None
            assert stats.revision == "rev-1"
            assert stats.total_count == 3
            assert snapshot.revision == "rev-1"
            assert len(snapshot.descriptors) == 3

            await writer.commit()
        finally:
            await writer.close()

        assert await synced_store.get("n8n-nodes-base.slack") is None
        assert (await synced_store.get("x.new")).name == "x.new"
        assert (await synced_store.stats()).revision == "rev-2"
        snapshot = await synced_store.snapshot()
        assert snapshot.revision == "rev-2"
        assert [d.name for d in snapshot.descriptors] == ["x.new"]

    @pytest.mark.asyncio
    async def test_rolled_back_write_is_never_visible(self, synced_store):
        writer = await aiosqlite.connect(synced_store.db_path)
        try:
            await writer.execute("BEGIN IMMEDIATE")
            await writer.execute("DELETE FROM nodes")
            assert (await asyncio.wait_for(synced_store.stats(), timeout=1)).total_count == 3
            await writer.rollback()
        finally:
            await writer.close()
        assert (await synced_store.stats()).total_count == 3

    @pytest.mark.asyncio
    async def test_sync_waits_for_other_writer(self, synced_store, small_catalog):
        writer = await aiosqlite.connect(synced_store.db_path)
        try:
            await writer.execute("BEGIN IMMEDIATE")
            pending = asyncio.create_task(synced_store.sync(small_catalog[:1], "rev-2"))
            await asyncio.sleep(0.1)
            assert not pending.done()
            assert (await synced_store.stats()).revision == "rev-1"
            await writer.rollback()
        finally:
            await writer.close()

        result = await asyncio.wait_for(pending, timeout=5)
        assert result.ok
        assert (await synced_store.stats()).revision == "rev-2"
