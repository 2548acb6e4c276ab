"""Tests for SyncStore."""

from tidesync.store import (
    ConflictRecord,
    LogLevel,
    MutationOp,
    QueueItem,
    QueueStatus,
    SyncStore,
)
from tidesync.store.sync_store import DAY_MS

START_MS = 1_700_000_000_000


def make_item(item_id: str, target_id: str = "n1", created_at: int = START_MS, **kwargs) -> QueueItem:
    return QueueItem(
        id=item_id,
        op=kwargs.pop("op", MutationOp.UPDATE),
        target_type=kwargs.pop("target_type", "node"),
        target_id=target_id,
        payload_json=kwargs.pop("payload_json", '{"text": "x"}'),
        base_version=kwargs.pop("base_version", 1),
        created_at=created_at,
        **kwargs,
    )


def make_conflict(conflict_id: str, queue_id: str, project_id: str = "p1", created_at: int = START_MS) -> ConflictRecord:
    return ConflictRecord(
        id=conflict_id,
        queue_id=queue_id,
        project_id=project_id,
        node_id="n1",
        base_json='{"v": 1}',
        remote_json='{"v": 2}',
        local_json='{"text": "x"}',
        policy="manual",
        created_at=created_at,
    )


class TestSchema:
    """Tests for schema initialization."""

    def test_connect_creates_tables(self, store):
        """Test that connect() creates all tables."""
        tables = {
            row[0]
            for row in store._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            )
        }

        assert {"queue", "conflicts", "cursors", "logs", "leases"} <= tables

    def test_file_database_persists(self, tmp_path):
        """Test that data survives reopening a file database."""
        db_path = tmp_path / "nested" / "sync.db"
        store = SyncStore(db_path)
        store.connect()
        store.enqueue(make_item("q1"))
        store.close()

        reopened = SyncStore(db_path)
        reopened.connect()
        assert reopened.get_item("q1").status == QueueStatus.PENDING
        assert "db_size_mb" in reopened.get_stats()
        reopened.close()

    def test_lazy_connect(self):
        """Test that operations connect on first use."""
        store = SyncStore(":memory:")

        assert store.get_item("missing") is None
        store.close()


class TestQueue:
    """Tests for queue item operations."""

    def test_enqueue_and_get(self, store):
        """Test that an enqueued item reads back unchanged."""
        assert store.enqueue(make_item("q1", base_version=7))

        item = store.get_item("q1")
        assert item.op == MutationOp.UPDATE
        assert item.base_version == 7
        assert item.retries == 0
        assert item.next_attempt_at is None
        assert item.created_at == START_MS

    def test_enqueue_duplicate_id_is_ignored(self, store):
        """Test that a duplicate id never resets the existing row."""
        store.enqueue(make_item("q1"))
        store.mark_retry("q1", 0, START_MS + 4000)

        assert not store.enqueue(make_item("q1", payload_json='{"other": 1}'))

        item = store.get_item("q1")
        assert item.retries == 1
        assert item.payload_json == '{"text": "x"}'

    def test_get_due_orders_by_enqueue_time(self, store):
        """Test that due items come back oldest first."""
        store.enqueue(make_item("late", target_id="a", created_at=START_MS + 5))
        store.enqueue(make_item("early", target_id="b", created_at=START_MS))

        assert [i.id for i in store.get_due(now=START_MS + 10)] == ["early", "late"]

    def test_get_due_breaks_ties_by_insertion(self, store):
        """Test that equal timestamps keep insertion order."""
        for item_id in ("z", "a", "m"):
            store.enqueue(make_item(item_id, target_id=item_id))

        assert [i.id for i in store.get_due(now=START_MS)] == ["z", "a", "m"]

    def test_get_due_respects_limit(self, store):
        """Test that get_due returns at most ``limit`` items."""
        for i in range(5):
            store.enqueue(make_item(f"q{i}", target_id=f"n{i}", created_at=START_MS + i))

        assert len(store.get_due(limit=3, now=START_MS + 10)) == 3

    def test_get_due_skips_waiting_retries(self, store):
        """Test that retrying items are due only once their backoff elapses."""
        store.enqueue(make_item("q1"))
        store.mark_retry("q1", 0, START_MS + 4000)

        assert store.get_due(now=START_MS + 3999) == []
        assert [i.id for i in store.get_due(now=START_MS + 4000)] == ["q1"]

    def test_get_due_holds_back_later_edits(self, store):
        """Test that a waiting item blocks later items for the same target."""
        store.enqueue(make_item("first", created_at=START_MS))
        store.enqueue(make_item("second", created_at=START_MS + 1))
        store.enqueue(make_item("elsewhere", target_id="n2", created_at=START_MS + 2))
        store.mark_retry("first", 0, START_MS + 4000)

        assert [i.id for i in store.get_due(now=START_MS + 10)] == ["elsewhere"]
        assert [i.id for i in store.get_due(now=START_MS + 4000)] == [
            "first",
            "second",
            "elsewhere",
        ]

    def test_get_due_excludes_terminal(self, store):
        """Test that done and poisoned items are never due."""
        store.enqueue(make_item("done", target_id="a"))
        store.enqueue(make_item("poison", target_id="b"))
        store.mark_done("done")
        store.mark_poison("poison")

        assert store.get_due(now=START_MS + DAY_MS) == []

    def test_list_items_by_status(self, store):
        """Test listing items filtered by status."""
        store.enqueue(make_item("q1", target_id="a"))
        store.enqueue(make_item("q2", target_id="b"))
        store.mark_done("q2")

        assert [i.id for i in store.list_items()] == ["q1", "q2"]
        assert [i.id for i in store.list_items(QueueStatus.DONE)] == ["q2"]


class TestStatusTransitions:
    """Tests for compare-and-set status updates."""

    def test_mark_done(self, store):
        store.enqueue(make_item("q1"))

        assert store.mark_done("q1")
        assert not store.mark_done("q1")
        assert store.get_item("q1").status == QueueStatus.DONE

    def test_mark_retry_is_compare_and_set(self, store):
        """Test that a stale retry count does not double count."""
        store.enqueue(make_item("q1"))

        assert store.mark_retry("q1", 0, START_MS + 4000)
        assert not store.mark_retry("q1", 0, START_MS + 4000)

        item = store.get_item("q1")
        assert item.status == QueueStatus.RETRYING
        assert item.retries == 1

    def test_terminal_items_never_change(self, store):
        """Test that done and poison rows reject every later update."""
        store.enqueue(make_item("done", target_id="a"))
        store.enqueue(make_item("poison", target_id="b"))
        store.mark_done("done")
        store.mark_poison("poison", retries=5)

        for item_id in ("done", "poison"):
            assert not store.mark_done(item_id)
            assert not store.mark_retry(item_id, 0, START_MS)
            assert not store.mark_poison(item_id, retries=9)

        assert store.get_item("done").status == QueueStatus.DONE
        poisoned = store.get_item("poison")
        assert poisoned.status == QueueStatus.POISON
        assert poisoned.retries == 5

    def test_mark_poison_never_lowers_retries(self, store):
        store.enqueue(make_item("q1"))
        store.mark_retry("q1", 0, START_MS)
        store.mark_retry("q1", 1, START_MS)

        store.mark_poison("q1")

        assert store.get_item("q1").retries == 2


class TestConflicts:
    """Tests for conflict records."""

    def test_record_conflict_poisons_item(self, store):
        """Test that recording a conflict poisons its item in one step."""
        store.enqueue(make_item("q1"))

        assert store.record_conflict(make_conflict("c1", "q1"))

        assert store.get_item("q1").status == QueueStatus.POISON
        conflict = store.get_conflict("c1")
        assert conflict.queue_id == "q1"
        assert conflict.to_dict()["remote"] == {"v": 2}

    def test_one_conflict_per_item(self, store):
        """Test that a second conflict for the same item is ignored."""
        store.enqueue(make_item("q1"))
        store.record_conflict(make_conflict("c1", "q1"))

        assert not store.record_conflict(make_conflict("c2", "q1"))

        assert len(store.list_conflicts()) == 1
        assert store.get_conflict_for_item("q1").id == "c1"

    def test_unwritten_conflict_leaves_item_active(self, store):
        """Test that an item is not poisoned unless its conflict record exists."""
        store.enqueue(make_item("q1"))
        bad = make_conflict("c1", "q1")
        bad.policy = None  # violates NOT NULL

        assert not store.record_conflict(bad)

        assert store.get_conflict("c1") is None
        assert store.get_item("q1").status == QueueStatus.PENDING

    def test_list_conflicts_by_project(self, store):
        """Test filtering conflicts by project, newest first."""
        for i, project in enumerate(["p1", "p2", "p1"]):
            store.enqueue(make_item(f"q{i}", target_id=f"n{i}"))
            store.record_conflict(make_conflict(f"c{i}", f"q{i}", project, START_MS + i))

        assert [c.id for c in store.list_conflicts("p1")] == ["c2", "c0"]
        assert len(store.list_conflicts()) == 3


class TestCursors:
    """Tests for delta pull cursors."""

    def test_missing_cursor(self, store):
        assert store.get_cursor("delta:global") is None

    def test_set_cursor_overwrites(self, store):
        """Test that setting a cursor replaces the previous value."""
        store.set_cursor("delta:global", "c1", now=START_MS)
        store.set_cursor("delta:global", "c2", now=START_MS + 1)

        assert store.get_cursor("delta:global") == "c2"
        cursors = store.list_cursors()
        assert len(cursors) == 1
        assert cursors[0].updated_at == START_MS + 1

    def test_delete_cursor(self, store):
        store.set_cursor("delta:project:p1", "c1")

        assert store.delete_cursor("delta:project:p1")
        assert store.get_cursor("delta:project:p1") is None
        assert not store.delete_cursor("delta:project:p1")


class TestAuditLog:
    """Tests for the audit log."""

    def test_add_and_get_logs(self, store):
        """Test that logs come back newest first with their metadata."""
        store.add_log(LogLevel.INFO, "first", {"id": "q1"}, now=START_MS)
        store.add_log(LogLevel.ERROR, "second", {"retries": 5}, now=START_MS + 1)

        logs = store.get_logs()
        assert [e.message for e in logs] == ["second", "first"]
        assert logs[0].meta == {"retries": 5}
        assert [e.message for e in store.get_logs(level=LogLevel.INFO)] == ["first"]

    def test_clear_old_logs(self, store):
        """Test that only entries older than the retention window are removed."""
        store.add_log(LogLevel.INFO, "old", now=START_MS)
        store.add_log(LogLevel.INFO, "new", now=START_MS + 6 * DAY_MS)

        deleted = store.clear_old_logs(keep_days=7, now=START_MS + 8 * DAY_MS)

        assert deleted == 1
        assert [e.message for e in store.get_logs()] == ["new"]


class TestPurge:
    """Tests for purging terminal items."""

    def test_purge_done_items(self, store):
        """Test that old done items are purged and active items kept."""
        store.enqueue(make_item("done", target_id="a"))
        store.enqueue(make_item("pending", target_id="b"))
        store.mark_done("done")

        deleted = store.purge_terminal(older_than_days=30, now=START_MS + 31 * DAY_MS)

        assert deleted == 1
        assert store.get_item("done") is None
        assert store.get_item("pending") is not None

    def test_purge_keeps_conflict_items(self, store):
        """Test that poisoned items owning a conflict are never purged."""
        store.enqueue(make_item("conflicted", target_id="a"))
        store.enqueue(make_item("poisoned", target_id="b"))
        store.record_conflict(make_conflict("c1", "conflicted"))
        store.mark_poison("poisoned")

        deleted = store.purge_terminal(
            older_than_days=1, now=START_MS + 2 * DAY_MS, include_poison=True
        )

        assert deleted == 1
        assert store.get_item("conflicted") is not None
        assert store.get_item("poisoned") is None


class TestLeases:
    """Tests for named drain leases."""

    def test_acquire_free_lease(self, store):
        assert store.acquire_lease("drain", "a", 1000, now=START_MS)

    def test_other_holder_blocked_until_expiry(self, store):
        """Test that a held lease blocks others until it expires."""
        store.acquire_lease("drain", "a", 1000, now=START_MS)

        assert not store.acquire_lease("drain", "b", 1000, now=START_MS + 999)
        assert store.acquire_lease("drain", "b", 1000, now=START_MS + 1000)

    def test_holder_can_renew(self, store):
        store.acquire_lease("drain", "a", 1000, now=START_MS)

        assert store.acquire_lease("drain", "a", 1000, now=START_MS + 500)
        assert not store.acquire_lease("drain", "b", 1000, now=START_MS + 1200)

    def test_release(self, store):
        """Test that only the holder can release a lease."""
        store.acquire_lease("drain", "a", 1000, now=START_MS)

        assert not store.release_lease("drain", "b")
        assert store.release_lease("drain", "a")
        assert store.acquire_lease("drain", "b", 1000, now=START_MS)


class TestStats:
    def test_get_stats(self, store):
        """Test statistics include every status."""
        store.enqueue(make_item("q1", target_id="a"))
        store.enqueue(make_item("q2", target_id="b"))
        store.mark_done("q2")
        store.set_cursor("delta:global", "c9")

        stats = store.get_stats()

        assert stats["queue_by_status"] == {
            "pending": 1,
            "retrying": 0,
            "done": 1,
            "poison": 0,
        }
        assert stats["queue_total"] == 2
        assert stats["conflicts"] == 0
        assert stats["cursors"] == {"delta:global": "c9"}
