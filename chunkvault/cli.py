"""
Command line interface.

Commands are registered on the Flask app's click group, so they run with the
app's configuration: `chunkvault backup`, `chunkvault restore latest`, ...
"""

import shutil
import sys
from pathlib import Path

import click
from flask import current_app
from flask.cli import FlaskGroup, with_appcontext

from chunkvault.backup.errors import PartialRestore, RepositoryError, VaultError
from chunkvault.backup.executor import execute_backup
from chunkvault.backup.repository import init_repository, kdf_params_from_config, open_repository
from chunkvault.backup.retention import RetentionRule

EXIT_FAILED = 1
EXIT_PARTIAL = 3

DATE_FORMAT = '%d-%b-%Y %H:%M:%S'


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(EXIT_FAILED)


@click.command('init')
@click.option('--unencrypted', is_flag=True, help='Create the repository without encryption.')
@with_appcontext
def init_command(unencrypted):
    """Create the configured repository."""
    config = current_app.config
    password = None if unencrypted else config.get('PASSPHRASE') or None
    if password is None and not unencrypted:
        _fail("No PASSPHRASE configured; pass --unencrypted to create a repository without encryption")

    try:
        data = init_repository(
            config['REPOSITORY_PATH'],
            password=password,
            kdf=kdf_params_from_config(config),
            chunk_size=int(config['CHUNK_SIZE']),
            compression_format=config['COMPRESSION']
        )
    except VaultError as e:
        _fail(str(e))

    state = 'encrypted' if data['encrypted'] else 'unencrypted'
    click.echo(f"Created {state} repository {data['id'][:8]} at {config['REPOSITORY_PATH']}")


@click.command('backup')
@click.option('--path', 'paths', multiple=True, help='Path or glob to back up (overrides BACKUP_PATHS).')
@click.option('--exclude', 'excludes', multiple=True, help='Exclude glob (overrides BACKUP_EXCLUDES).')
@with_appcontext
def backup_command(paths, excludes):
    """Back up the configured paths and apply retention."""
    config = dict(current_app.config)
    if paths:
        config['BACKUP_PATHS'] = list(paths)
    if excludes:
        config['BACKUP_EXCLUDES'] = list(excludes)

    if not config.get('BACKUP_PATHS'):
        _fail("No paths to back up; set BACKUP_PATHS or pass --path")

    report = execute_backup(config)

    for failure in report.failures:
        click.echo(f"Skipped {failure.path}: {failure.reason}", err=True)

    if report.status == 'failed':
        _fail(report.error_message)

    click.echo(f"Snapshot {report.snapshot_id[:8]} saved ({report.file_count} files)")
    if report.pruned:
        click.echo(f"Pruned {len(report.pruned)} snapshot(s)")
    click.echo("Backup completed.")

    if report.status == 'partial':
        sys.exit(EXIT_PARTIAL)


@click.command('snapshots')
@with_appcontext
def snapshots_command():
    """List snapshots, oldest first."""
    try:
        with open_repository(current_app.config) as repository:
            snapshots = repository.list()
    except VaultError as e:
        _fail(str(e))

    if not snapshots:
        click.echo("No snapshots found.")
        return

    for i, snapshot in enumerate(snapshots):
        click.echo(f"[{i}] {snapshot.created_at.strftime(DATE_FORMAT)}  (ID: {snapshot.short_id})")


@click.command('prune')
@click.option('--dry-run', is_flag=True, help='Only show what would be pruned.')
@with_appcontext
def prune_command(dry_run):
    """Forget snapshots outside the retention rule and reclaim space."""
    try:
        rule = RetentionRule.from_config(current_app.config)
        if rule.is_empty:
            _fail("No retention rule configured")

        with open_repository(current_app.config) as repository:
            if dry_run:
                plan = repository.retention.plan(rule)
                for snapshot_id in sorted(plan.prune):
                    click.echo(f"would prune {snapshot_id[:8]}")
                click.echo(f"{len(plan.keep)} kept, {len(plan.prune)} would be pruned")
                return

            result = repository.prune(rule)
    except VaultError as e:
        _fail(str(e))

    click.echo(f"{len(result.kept)} kept, {len(result.pruned)} pruned")
    if result.gc:
        click.echo(f"Reclaimed {result.gc.bytes_reclaimed} bytes from {result.gc.chunks_deleted} chunk(s)")


def _select_snapshot(repository, selection: str):
    """Resolve a list index, 'latest', or a snapshot id prefix."""
    if selection.isdigit() and len(selection) < 8:
        snapshots = repository.list()
        index = int(selection)
        if index >= len(snapshots):
            raise RepositoryError(f"Invalid selection: {selection}")
        return snapshots[index]
    return repository.get(selection)


@click.command('restore')
@click.argument('snapshot', default='latest')
@click.option('--target', required=True, type=click.Path(file_okay=False), help='Directory to restore into.')
@click.option('--include', 'include', multiple=True, help='Only restore files matching this glob.')
@click.option('--clean', is_flag=True, help='Empty the target directory first.')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation.')
@with_appcontext
def restore_command(snapshot, target, include, clean, yes):
    """Restore SNAPSHOT (list index, id or 'latest') into --target."""
    target_path = Path(target).expanduser()

    try:
        with open_repository(current_app.config) as repository:
            selected = _select_snapshot(repository, snapshot)
            taken = selected.created_at.strftime(DATE_FORMAT)

            if not yes and not click.confirm(
                f"Restore snapshot {selected.short_id} from {taken} to {target_path}?", default=True
            ):
                click.echo("Aborted.")
                sys.exit(EXIT_FAILED)

            if clean and target_path.is_dir():
                for child in target_path.iterdir():
                    if child.is_dir() and not child.is_symlink():
                        shutil.rmtree(child)
                    else:
                        child.unlink()

            restored = repository.restore(selected.id, str(target_path), include=list(include) or None)
    except PartialRestore as e:
        for failure in e.failures:
            click.echo(f"Skipped {failure.path}: {failure.reason}", err=True)
        click.echo(f"Restored {e.restored} file(s) to {target_path}, {len(e.failures)} skipped.")
        sys.exit(EXIT_PARTIAL)
    except VaultError as e:
        _fail(str(e))

    click.echo(f"Restore complete to {target_path} ({restored} files).")


@click.command('gc')
@with_appcontext
def gc_command():
    """Delete chunks no snapshot references."""
    try:
        with open_repository(current_app.config) as repository:
            result = repository.gc()
    except VaultError as e:
        _fail(str(e))

    click.echo(f"Removed {result.chunks_deleted} chunk(s), reclaimed {result.bytes_reclaimed} bytes")


@click.command('check')
@click.option('--repair', is_flag=True, help='Reset reference counts to the snapshot references.')
@with_appcontext
def check_command(repair):
    """Verify reference counts and chunk blobs."""
    try:
        with open_repository(current_app.config) as repository:
            result = repository.check(repair=repair)
    except VaultError as e:
        _fail(str(e))

    for digest, (stored, expected) in sorted(result.refcount_mismatches.items()):
        click.echo(f"refcount {digest[:12]}: stored {stored}, expected {expected}")
    for digest in result.missing_blobs:
        click.echo(f"missing blob {digest[:12]}")
    for location in result.orphan_blobs:
        click.echo(f"orphan blob {location}")

    if result.repaired:
        click.echo("Reference counts repaired; run gc to reclaim space.")
    if result.ok:
        click.echo("No errors found.")
    elif not result.repaired or result.missing_blobs:
        sys.exit(EXIT_FAILED)


COMMANDS = (
    init_command,
    backup_command,
    snapshots_command,
    prune_command,
    restore_command,
    gc_command,
    check_command
)


def register_commands(app):
    """Add the repository commands to app.cli."""
    for command in COMMANDS:
        app.cli.add_command(command)


def _create_cli_app():
    from chunkvault import create_app
    return create_app(with_scheduler=False)


main = FlaskGroup(create_app=_create_cli_app, add_default_commands=True,
                  help='Deduplicating, encrypted snapshot backups.')
