"""
Unit tests for snapshots (chunkvault/backup/snapshots.py).

Tests atomic commit, lookup by id prefix and forgetting snapshots.
"""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from chunkvault.backup.errors import IncompleteTree, NotFound, StorageUnavailable
from chunkvault.backup.snapshots import SnapshotBuilder, SnapshotManager
from chunkvault.backup.storage import ChunkRef

MODE = 0o100644


def _commit(manager, store, files, created_at=None):
    """Commit a snapshot of {path: bytes}."""
    builder = manager.begin(paths=['/src'], hostname='testhost')
    for path, data in files.items():
        refs = _put(store, data)
        builder.add_file(path, refs, MODE, 1700000000.0)
    return manager.commit(builder, created_at=created_at)


def _put(store, data):
    return [store.put(data[i:i + store.chunk_size]) for i in range(0, len(data), store.chunk_size)]


class TestSnapshotBuilder:
    """Test accumulating files before commit."""

    def test_files_sorted_by_path(self):
        builder = SnapshotBuilder(hostname='h')
        builder.add_file('/b', [], MODE)
        builder.add_file('/a', [], MODE)

        assert [entry.path for entry in builder.files] == ['/a', '/b']
        assert len(builder) == 2

    def test_duplicate_path_rejected(self):
        builder = SnapshotBuilder(hostname='h')
        builder.add_file('/a', [], MODE)

        with pytest.raises(ValueError, match='Duplicate'):
            builder.add_file('/a', [], MODE)

    def test_entry_size_is_sum_of_chunks(self):
        builder = SnapshotBuilder(hostname='h')
        entry = builder.add_file('/a', [ChunkRef('a' * 64, 10), ChunkRef('b' * 64, 5)], MODE)

        assert entry.size == 15


class TestCommit:
    """Test committing snapshots."""

    def test_commit_makes_snapshot_visible(self, snapshot_manager, store):
        snapshot_id = _commit(snapshot_manager, store, {'/src/a': b'alpha', '/src/b': b'beta' * 40})

        snapshots = snapshot_manager.list()
        assert [s.id for s in snapshots] == [snapshot_id]
        assert snapshots[0].file_count == 2
        assert snapshots[0].total_size == 5 + 160
        assert snapshots[0].hostname == 'testhost'
        assert snapshots[0].paths == ('/src',)

    def test_get_returns_files_with_ordered_chunks(self, snapshot_manager, store):
        data = bytes(range(200))
        snapshot_id = _commit(snapshot_manager, store, {'/src/data': data})

        snapshot = snapshot_manager.get(snapshot_id)

        entry = snapshot.files[0]
        assert entry.path == '/src/data'
        assert entry.mode == MODE
        assert entry.mtime == 1700000000.0
        assert b''.join(store.get(chunk) for chunk in entry.chunks) == data

    def test_second_snapshot_records_parent(self, snapshot_manager, store):
        first = _commit(snapshot_manager, store, {'/src/a': b'one'},
                        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        second = _commit(snapshot_manager, store, {'/src/a': b'two'},
                         created_at=datetime(2024, 1, 2, tzinfo=timezone.utc))

        assert snapshot_manager.get(second).parent_id == first
        assert [s.id for s in snapshot_manager.list()] == [first, second]

    def test_commit_missing_chunk_raises_incomplete_tree(self, snapshot_manager):
        builder = snapshot_manager.begin()
        builder.add_file('/src/a', [ChunkRef('e' * 64, 3)], MODE)

        with pytest.raises(IncompleteTree) as exc_info:
            snapshot_manager.commit(builder)

        assert exc_info.value.missing == ['e' * 64]
        assert snapshot_manager.list() == []

    def test_commit_twice_rejected(self, snapshot_manager, store):
        builder = snapshot_manager.begin()
        builder.add_file('/src/a', _put(store, b'x'), MODE)
        snapshot_manager.commit(builder)

        with pytest.raises(ValueError, match='already committed'):
            snapshot_manager.commit(builder)
        with pytest.raises(ValueError, match='already committed'):
            builder.add_file('/src/b', [], MODE)

    def test_failure_during_commit_leaves_index_unchanged(self, snapshot_manager, store):
        """Test a crash between writing the snapshot row and its files rolls back."""
        existing = _commit(snapshot_manager, store, {'/src/a': b'stable'},
                           created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))

        builder = snapshot_manager.begin()
        builder.add_file('/src/b', _put(store, b'new content'), MODE)

        with patch.object(SnapshotManager, '_persist_files', side_effect=StorageUnavailable('disk gone')):
            with pytest.raises(StorageUnavailable):
                snapshot_manager.commit(builder)

        assert [s.id for s in snapshot_manager.list()] == [existing]
        assert builder.committed_id is None

    def test_snapshot_id_is_content_derived(self, snapshot_manager, store):
        created = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        snapshot_id = _commit(snapshot_manager, store, {'/src/a': b'a'}, created_at=created)

        assert len(snapshot_id) == 64
        assert snapshot_manager.get(snapshot_id).created_at == created


class TestLookup:
    """Test get(), latest() and count()."""

    def test_get_by_unique_prefix(self, snapshot_manager, store):
        snapshot_id = _commit(snapshot_manager, store, {'/src/a': b'a'})

        assert snapshot_manager.get(snapshot_id[:8]).id == snapshot_id

    def test_get_unknown_raises_not_found(self, snapshot_manager):
        with pytest.raises(NotFound):
            snapshot_manager.get('deadbeef')

    def test_get_empty_id_raises_not_found(self, snapshot_manager):
        with pytest.raises(NotFound):
            snapshot_manager.get('')

    def test_get_wildcards_are_literal(self, snapshot_manager, store):
        _commit(snapshot_manager, store, {'/src/a': b'a'})

        with pytest.raises(NotFound):
            snapshot_manager.get('%')

    def test_latest(self, snapshot_manager, store):
        _commit(snapshot_manager, store, {'/src/a': b'1'}, created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        newest = _commit(snapshot_manager, store, {'/src/a': b'2'}, created_at=datetime(2024, 2, 1, tzinfo=timezone.utc))

        assert snapshot_manager.latest().id == newest
        assert snapshot_manager.count() == 2

    def test_latest_on_empty_repository_raises_not_found(self, snapshot_manager):
        with pytest.raises(NotFound):
            snapshot_manager.latest()


class TestForget:
    """Test forgetting snapshots."""

    def test_forget_drops_references(self, snapshot_manager, store):
        shared = b'shared chunk'
        first = _commit(snapshot_manager, store, {'/src/a': shared, '/src/b': b'only first'},
                        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        second = _commit(snapshot_manager, store, {'/src/a': shared},
                         created_at=datetime(2024, 1, 2, tzinfo=timezone.utc))

        shared_ref = snapshot_manager.get(second).files[0].chunks[0]
        assert store.refcount(shared_ref.digest) == 2

        assert snapshot_manager.forget([first]) == {first}

        assert [s.id for s in snapshot_manager.list()] == [second]
        assert store.refcount(shared_ref.digest) == 1
        assert store.get(shared_ref) == shared

    def test_forget_then_gc_reclaims_only_unshared_chunks(self, snapshot_manager, store):
        first = _commit(snapshot_manager, store, {'/src/a': b'shared', '/src/b': b'only first'},
                        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        _commit(snapshot_manager, store, {'/src/a': b'shared'},
                created_at=datetime(2024, 1, 2, tzinfo=timezone.utc))

        snapshot_manager.forget([first])
        result = store.garbage_collect()

        assert result.chunks_deleted == 1

    def test_forget_unknown_raises_not_found_and_deletes_nothing(self, snapshot_manager, store):
        existing = _commit(snapshot_manager, store, {'/src/a': b'a'})

        with pytest.raises(NotFound):
            snapshot_manager.forget([existing, 'f' * 64])

        assert snapshot_manager.count() == 1

    def test_forget_nothing(self, snapshot_manager):
        assert snapshot_manager.forget([]) == set()
