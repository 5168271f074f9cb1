"""
Unit tests for the JSON API (chunkvault/routes/snapshot_routes.py).
"""

from unittest.mock import patch

from chunkvault.backup.errors import CorruptChunk, RepositoryLocked, StorageUnavailable
from chunkvault.backup.executor import BackupReport

EXCLUDES = ['*.log', '**/cache/*']


class TestHealth:

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json() == {'status': 'healthy'}


class TestSnapshotRoutes:
    """Test listing and reading snapshots."""

    def test_list_snapshots(self, client, repository, source_tree):
        first = repository.backup([str(source_tree)], EXCLUDES)
        second = repository.backup([str(source_tree)], EXCLUDES)

        response = client.get('/api/snapshots')

        assert response.status_code == 200
        data = response.get_json()
        assert [s['id'] for s in data] == [first.snapshot_id, second.snapshot_id]
        assert data[1]['parent'] == first.snapshot_id
        assert data[0]['short_id'] == first.snapshot_id[:8]
        assert data[0]['file_count'] == 4

    def test_list_snapshots_empty(self, client, repository):
        response = client.get('/api/snapshots')

        assert response.status_code == 200
        assert response.get_json() == []

    def test_list_without_repository(self, client):
        """Test a missing repository is reported as a conflict."""
        response = client.get('/api/snapshots')

        assert response.status_code == 409
        assert 'No repository' in response.get_json()['error']

    def test_get_snapshot(self, client, repository, source_tree):
        result = repository.backup([str(source_tree)], EXCLUDES)

        response = client.get(f'/api/snapshots/{result.snapshot_id[:8]}')

        assert response.status_code == 200
        data = response.get_json()
        assert data['id'] == result.snapshot_id
        files = {f['path']: f for f in data['files']}
        assert files[str(source_tree / 'b.bin')]['size'] == 160
        assert files[str(source_tree / 'b.bin')]['chunks'] == 3
        assert files[str(source_tree / 'empty.txt')]['chunks'] == 0

    def test_get_latest_snapshot(self, client, repository, source_tree):
        repository.backup([str(source_tree)], EXCLUDES)
        latest = repository.backup([str(source_tree / 'a.txt')], [])

        response = client.get('/api/snapshots/latest')

        assert response.get_json()['id'] == latest.snapshot_id
        assert len(response.get_json()['files']) == 1

    def test_get_unknown_snapshot(self, client, repository):
        response = client.get('/api/snapshots/deadbeef')

        assert response.status_code == 404
        assert 'not found' in response.get_json()['error']

    @patch('chunkvault.routes.snapshot_routes.open_repository')
    def test_locked_repository(self, mock_open, client):
        mock_open.side_effect = RepositoryLocked("Repository is locked")

        response = client.get('/api/snapshots')

        assert response.status_code == 409

    @patch('chunkvault.routes.snapshot_routes.open_repository')
    def test_storage_errors(self, mock_open, client):
        mock_open.side_effect = StorageUnavailable("disk gone")
        assert client.get('/api/snapshots').status_code == 503

        mock_open.side_effect = CorruptChunk("bad chunk")
        assert client.get('/api/snapshots').status_code == 500


class TestBackupRoute:
    """Test starting backups over the API."""

    def test_backup_runs_in_request(self, client):
        """Test a backup runs synchronously without a scheduler."""
        response = client.post('/api/backups')

        assert response.status_code == 200
        data = response.get_json()
        assert data['status'] == 'success'
        assert data['file_count'] == 4
        assert len(data['snapshot_id']) == 64

        listing = client.get('/api/snapshots').get_json()
        assert [s['id'] for s in listing] == [data['snapshot_id']]

    @patch('chunkvault.routes.snapshot_routes.trigger_backup_now')
    @patch('chunkvault.routes.snapshot_routes.is_scheduler_running')
    def test_backup_queued_on_scheduler(self, mock_running, mock_trigger, client):
        mock_running.return_value = True
        mock_trigger.return_value = 'manual_1710936000'

        response = client.post('/api/backups')

        assert response.status_code == 202
        assert response.get_json() == {'job_id': 'manual_1710936000', 'message': 'Backup queued'}

    def test_backup_without_paths(self, app, client):
        app.config['BACKUP_PATHS'] = []

        response = client.post('/api/backups')

        assert response.status_code == 400

    @patch('chunkvault.routes.snapshot_routes.execute_backup')
    def test_failed_backup(self, mock_execute, client):
        mock_execute.return_value = BackupReport(status='failed', error_message='boom')

        response = client.post('/api/backups')

        assert response.status_code == 500
        assert response.get_json()['error_message'] == 'boom'


class TestPruneRoute:
    """Test retention over the API."""

    def _two_snapshots(self, repository, source_tree):
        first = repository.backup([str(source_tree)], EXCLUDES)
        (source_tree / 'a.txt').write_text('changed')
        second = repository.backup([str(source_tree)], EXCLUDES)
        return first.snapshot_id, second.snapshot_id

    def test_prune_dry_run(self, client, repository, source_tree):
        first, second = self._two_snapshots(repository, source_tree)

        response = client.post('/api/prune', json={'keep_daily': 1, 'dry_run': True})

        assert response.status_code == 200
        data = response.get_json()
        assert data['dry_run'] is True
        assert data['kept'] == [second]
        assert data['pruned'] == [first]
        assert second in data['reasons']
        assert [s.id for s in repository.list()] == [first, second]

    def test_prune(self, client, repository, source_tree):
        first, second = self._two_snapshots(repository, source_tree)

        response = client.post('/api/prune', json={'keep_daily': 1})

        data = response.get_json()
        assert data['pruned'] == [first]
        assert data['kept'] == [second]
        # The old version of a.txt was only referenced by the first snapshot
        assert data['chunks_deleted'] == 1
        assert data['bytes_reclaimed'] > 0
        assert [s.id for s in repository.list()] == [second]

    def test_prune_with_configured_rule(self, client, repository, source_tree):
        _, second = self._two_snapshots(repository, source_tree)

        response = client.post('/api/prune')

        assert response.status_code == 200
        assert response.get_json()['kept'] == [second]

    def test_prune_refuses_empty_rule(self, client, repository, source_tree):
        self._two_snapshots(repository, source_tree)

        response = client.post('/api/prune', json={
            'keep_daily': 0, 'keep_weekly': 0, 'keep_monthly': 0, 'keep_last': 0
        })

        assert response.status_code == 400
        assert len(repository.list()) == 2

    def test_prune_invalid_rule(self, client, repository):
        response = client.post('/api/prune', json={'keep_daily': -1})

        assert response.status_code == 400
        assert 'negative' in response.get_json()['error']


class TestSchedulerRoute:

    def test_scheduler_status(self, client):
        response = client.get('/api/scheduler')

        assert response.get_json() == {
            'running': False,
            'schedule': '0 2 * * *',
            'jobs': []
        }
