import os
import sys

from conftest import collect, commit_file, git, requires_git, write_archive

from panelback.config_loader import load_update_state, save_updater_config
from panelback.updater.backup import create_backup, list_backups
from panelback.updater.executor import stream_rollback, stream_update


def _snapshot(root):
    """Map of relative path -> bytes for every regular file under root."""
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob('*'))
        if path.is_file() and '.git' not in path.relative_to(root).parts
    }


def _fail_step(code=3):
    return {'name': 'frontend build', 'cwd': '.',
            'command': [sys.executable, '-c', f'import sys; print("build failed"); sys.exit({code})']}


@requires_git
async def test_update_pulls_backs_up_and_restarts(git_checkout, app_dir, restarts):
    upstream = git_checkout
    new_hash = commit_file(upstream, 'src/main.js', 'console.log("v2");\n', 'Release v2')
    git(upstream, 'push', '-q', 'origin', 'main')

    events = await collect(stream_update())

    assert events[0]['status'] == 'updating'
    assert events[-1]['status'] == 'restarting'
    assert not any(event.get('status') == 'error' for event in events)

    backups = list_backups()
    assert len(backups) == 1
    assert backups[0]['kind'] == 'update'
    assert any(event.get('backup') == backups[0]['filename'] for event in events)

    assert (app_dir / 'src' / 'main.js').read_text(encoding='utf-8') == 'console.log("v2");\n'
    assert git(app_dir, 'rev-parse', '--short', 'HEAD') == new_hash
    assert len(restarts) == 1

    state = load_update_state()
    assert state['pending_restart']['operation'] == 'update'
    assert state['pending_restart']['expected_hash'] == new_hash
    assert state['last_update']['status'] == 'success'


async def test_update_runs_install_steps_and_skips_missing_dirs(updater_config, app_dir, restarts, tmp_path):
    marker = tmp_path / 'installed.txt'
    save_updater_config({
        **updater_config,
        'pull_command': [sys.executable, '-c', 'print("Already up to date.")'],
        'install_steps': [
            {'name': 'proxy dependencies', 'cwd': 'proxy', 'command': ['npm', 'install']},
            {'name': 'frontend dependencies', 'cwd': '.', 'requires': 'package.json', 'command': ['npm', 'install']},
            {'name': 'backend', 'cwd': 'src',
             'command': [sys.executable, '-c', f'open({str(marker)!r}, "w").write("ok")']},
        ],
    })

    events = await collect(stream_update())
    logs = [event['log'] for event in events if 'log' in event]

    assert events[-1]['status'] == 'restarting'
    assert 'Already up to date.' in logs
    assert any(line.startswith('Skipping proxy dependencies') for line in logs)
    assert any(line.startswith('Skipping frontend dependencies: no package.json') for line in logs)
    assert marker.read_text(encoding='utf-8') == 'ok'


async def test_failed_install_step_stops_without_restart(updater_config, restarts):
    save_updater_config({
        **updater_config,
        'pull_command': [sys.executable, '-c', 'print("Fast-forward")'],
        'install_steps': [_fail_step(3)],
    })

    events = await collect(stream_update())
    final = events[-1]
    backups = list_backups()

    assert final['status'] == 'error'
    assert 'exit code 3' in final['message']
    assert backups[0]['filename'] in final['message']
    assert not any(event.get('status') == 'restarting' for event in events)
    assert restarts == []

    assert len(backups) == 1
    assert load_update_state()['last_update']['status'] == 'error'


async def test_pull_timeout_ends_in_error(updater_config, restarts):
    save_updater_config({
        **updater_config,
        'pull_command': [sys.executable, '-c', 'import time; time.sleep(30)'],
        'step_timeout_seconds': 0.5,
    })

    events = await collect(stream_update())

    assert events[-1]['status'] == 'error'
    assert 'timed out' in events[-1]['message']
    assert len(list_backups()) == 1
    assert restarts == []


async def test_update_aborts_when_backup_fails(updater_config, restarts, monkeypatch, tmp_path):
    pulled = tmp_path / 'pulled.txt'
    save_updater_config({
        **updater_config,
        'pull_command': [sys.executable, '-c', f'open({str(pulled)!r}, "w").close()'],
    })
    monkeypatch.setattr('panelback.updater.backup._read_archive_fully', lambda path: -1)

    events = await collect(stream_update())

    assert events[-1]['status'] == 'error'
    assert 'nothing was changed' in events[-1]['message']
    assert not pulled.exists()
    assert restarts == []


async def test_rollback_rejects_traversal_without_touching_files(updater_config, app_dir, backup_dir, restarts):
    before = _snapshot(app_dir)

    events = await collect(stream_rollback('../../etc/passwd'))

    assert len(events) == 1
    assert events[0]['status'] == 'error'
    assert _snapshot(app_dir) == before
    assert not backup_dir.exists() or list(backup_dir.iterdir()) == []
    assert restarts == []


async def test_rollback_of_missing_backup_is_an_error(updater_config, restarts):
    events = await collect(stream_rollback('backup-20300101T000000000000Z-manual.tar.gz'))

    assert events == [{'status': 'error', 'message': 'Backup file not found: backup-20300101T000000000000Z-manual.tar.gz'}]


async def test_rollback_restores_tree_byte_for_byte(updater_config, app_dir, restarts):
    (app_dir / 'bin.dat').write_bytes(bytes(range(256)))
    expected = _snapshot(app_dir)
    target = create_backup('manual')['filename']

    (app_dir / 'src' / 'main.js').write_text('console.log("broken");\n', encoding='utf-8')
    (app_dir / 'README.md').unlink()
    (app_dir / 'src' / 'added.js').write_text('new file\n', encoding='utf-8')
    (app_dir / 'node_modules' / 'left-pad' / 'index.js').write_text('module.exports = 2;\n', encoding='utf-8')

    events = await collect(stream_rollback(target))

    assert events[0]['status'] == 'rollingback'
    assert events[-1]['status'] == 'restarting'

    restored = _snapshot(app_dir)
    # Preserved paths are left as they were at rollback time
    assert restored['node_modules/left-pad/index.js'] == b'module.exports = 2;\n'
    restored.pop('node_modules/left-pad/index.js')
    expected.pop('node_modules/left-pad/index.js')
    assert restored == expected
    assert (app_dir / '.env').read_text(encoding='utf-8') == 'SECRET=1\n'

    kinds = [item['kind'] for item in list_backups()]
    assert kinds == ['manual', 'rollback']
    assert len(restarts) == 1
    assert load_update_state()['pending_restart']['operation'] == 'rollback'


async def test_rollback_refuses_unrestorable_archive_before_touching_files(updater_config, app_dir, backup_dir, restarts):
    target = write_archive(
        backup_dir / 'backup-20200101T000000000000Z-manual.tar.gz',
        files={'src/main.js': b'console.log("old");\n'},
        links={'hostlink': '/etc/hostname'},
    )
    before = _snapshot(app_dir)

    events = await collect(stream_rollback(target))

    assert len(events) == 1
    assert events[0]['status'] == 'error'
    assert 'hostlink' in events[0]['message']
    assert _snapshot(app_dir) == before
    assert [item['filename'] for item in list_backups()] == [target]
    assert restarts == []


async def test_rollback_with_links_in_tree(updater_config, app_dir, restarts):
    os.symlink('/etc/hostname', app_dir / 'hostlink')
    os.symlink('main.js', app_dir / 'src' / 'alias.js')
    backup = create_backup('manual')
    assert backup['skipped'] == ['hostlink']

    (app_dir / 'src' / 'main.js').write_text('console.log("broken");\n', encoding='utf-8')

    events = await collect(stream_rollback(backup['filename']))

    assert events[-1]['status'] == 'restarting'
    assert (app_dir / 'src' / 'main.js').read_text(encoding='utf-8') == 'console.log("v1");\n'
    assert os.readlink(app_dir / 'src' / 'alias.js') == 'main.js'
    assert any('hostlink' in event.get('log', '') for event in events)


async def test_failed_rollback_names_safety_backup(updater_config, restarts):
    target = create_backup('manual')['filename']
    save_updater_config({**updater_config, 'install_steps': [_fail_step(1)]})

    events = await collect(stream_rollback(target))
    safety = [item['filename'] for item in list_backups() if item['kind'] == 'rollback']

    assert events[-1]['status'] == 'error'
    assert len(safety) == 1
    assert safety[0] in events[-1]['message']
    assert restarts == []
