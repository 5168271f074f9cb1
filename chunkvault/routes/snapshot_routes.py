"""
Snapshot routes - listing, backup triggers and retention over JSON.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from chunkvault.auth import require_token
from chunkvault.backup.errors import (
    InvalidRetentionRule,
    NotFound,
    RepositoryError,
    RepositoryLocked,
    StorageUnavailable,
    VaultError
)
from chunkvault.backup.executor import execute_backup
from chunkvault.backup.repository import open_repository
from chunkvault.backup.retention import RetentionRule
from chunkvault.scheduler import get_scheduled_jobs, is_scheduler_running, trigger_backup_now

logger = logging.getLogger(__name__)

bp = Blueprint('snapshots', __name__, url_prefix='/api')


@bp.errorhandler(VaultError)
def handle_vault_error(error):
    """Map repository errors to JSON error responses."""
    if isinstance(error, NotFound):
        status = 404
    elif isinstance(error, InvalidRetentionRule):
        status = 400
    elif isinstance(error, (RepositoryLocked, RepositoryError)):
        status = 409
    elif isinstance(error, StorageUnavailable):
        status = 503
    else:
        status = 500

    if status >= 500:
        logger.error(f"Request failed: {error}")
    return jsonify({'error': str(error)}), status


@bp.route('/snapshots', methods=['GET'])
@require_token
def list_snapshots():
    """
    Get list of all snapshots, oldest first.

    Returns:
        JSON array of snapshot summaries
    """
    with open_repository(current_app.config) as repository:
        snapshots = repository.list()

    return jsonify([snapshot.summary() for snapshot in snapshots])


@bp.route('/snapshots/<snapshot_id>', methods=['GET'])
@require_token
def get_snapshot(snapshot_id):
    """
    Get a single snapshot with its file list.

    Args:
        snapshot_id: Snapshot id, unique id prefix or 'latest'

    Returns:
        JSON with snapshot summary and files
    """
    with open_repository(current_app.config) as repository:
        snapshot = repository.get(snapshot_id)

    data = snapshot.summary()
    data['files'] = [
        {
            'path': entry.path,
            'size': entry.size,
            'mode': entry.mode,
            'mtime': entry.mtime,
            'chunks': len(entry.chunks)
        }
        for entry in snapshot.files
    ]
    return jsonify(data)


@bp.route('/backups', methods=['POST'])
@require_token
def run_backup():
    """
    Start a backup of the configured paths.

    With a running scheduler the backup is queued there and 202 is returned;
    otherwise it runs within the request and the report is returned.

    Returns:
        JSON with the job id, or the backup report
    """
    if is_scheduler_running():
        job_id = trigger_backup_now()
        return jsonify({
            'job_id': job_id,
            'message': 'Backup queued'
        }), 202

    if not current_app.config.get('BACKUP_PATHS'):
        return jsonify({'error': 'No BACKUP_PATHS configured'}), 400

    report = execute_backup(current_app.config)
    status = 500 if report.status == 'failed' else 200
    return jsonify(report.to_dict()), status


@bp.route('/prune', methods=['POST'])
@require_token
def prune_snapshots():
    """
    Enforce the retention rule.

    Request body (all optional, defaults from configuration):
        - keep_daily, keep_weekly, keep_monthly, keep_last: Non-negative integers
        - dry_run: Only report what would be pruned

    Returns:
        JSON with kept and pruned snapshot ids
    """
    data = request.get_json(silent=True) or {}

    rule = RetentionRule.from_config(current_app.config)
    overrides = {
        key: data[key] for key in ('keep_daily', 'keep_weekly', 'keep_monthly', 'keep_last')
        if key in data
    }
    if overrides:
        values = {
            'keep_daily': rule.keep_daily,
            'keep_weekly': rule.keep_weekly,
            'keep_monthly': rule.keep_monthly,
            'keep_last': rule.keep_last
        }
        values.update(overrides)
        rule = RetentionRule(**values)

    if rule.is_empty:
        return jsonify({'error': 'Retention rule keeps nothing; refusing to prune'}), 400

    with open_repository(current_app.config) as repository:
        if data.get('dry_run'):
            plan = repository.retention.plan(rule)
            return jsonify({
                'dry_run': True,
                'kept': sorted(plan.keep),
                'pruned': sorted(plan.prune),
                'reasons': plan.reasons
            })

        result = repository.prune(rule)

    return jsonify({
        'dry_run': False,
        'kept': sorted(result.kept),
        'pruned': sorted(result.pruned),
        'chunks_deleted': result.gc.chunks_deleted if result.gc else 0,
        'bytes_reclaimed': result.gc.bytes_reclaimed if result.gc else 0
    })


@bp.route('/scheduler', methods=['GET'])
@require_token
def scheduler_status():
    """
    Get scheduler state and scheduled jobs.

    Returns:
        JSON with running flag and job list
    """
    return jsonify({
        'running': is_scheduler_running(),
        'schedule': current_app.config.get('BACKUP_SCHEDULE'),
        'jobs': get_scheduled_jobs()
    })
