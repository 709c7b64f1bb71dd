from conftest import collect, commit_file, git, requires_git

from panelback.config_loader import load_update_state, save_updater_config
from panelback.updater.state import UpdateStatus
from panelback.updater.version import check_status, classify, get_current_version, stream_check


def test_classify():
    assert classify(0, 0) == UpdateStatus.UPTODATE
    assert classify(0, 2) == UpdateStatus.AVAILABLE
    assert classify(1, 0) == UpdateStatus.AHEAD
    assert classify(1, 2) == UpdateStatus.DIVERGED


def test_current_version_outside_git_checkout_is_unknown(updater_config):
    assert get_current_version() == {'title': 'unknown', 'hash': 'unknown', 'description': ''}


async def test_check_outside_git_checkout_reports_error(updater_config):
    events = await collect(stream_check())

    assert events[0]['status'] == 'checking'
    assert events[-1]['status'] == 'error'
    assert 'not a git checkout' in events[-1]['message']
    assert load_update_state()['last_check_status'] == 'error'


@requires_git
def test_current_version_reads_head(git_checkout, app_dir):
    version = get_current_version()

    assert version['title'] == 'Initial release'
    assert version['description'] == 'First version of the panel.'
    assert version['hash'] == git(app_dir, 'rev-parse', '--short', 'HEAD')


@requires_git
async def test_up_to_date_check_is_idempotent(git_checkout, app_dir):
    head = git(app_dir, 'rev-parse', '--short', 'HEAD')

    first = await check_status()
    second = await check_status()

    assert first['status'] == 'uptodate'
    assert first['local'] == first['remote'] == head
    assert 'newVersionInfo' not in first
    assert second == first
    assert git(app_dir, 'rev-parse', '--short', 'HEAD') == head


@requires_git
async def test_remote_commit_makes_update_available(git_checkout, app_dir):
    upstream = git_checkout
    new_hash = commit_file(upstream, 'src/feature.js', 'export default 2;\n', 'Add hotspot page')
    git(upstream, 'push', '-q', 'origin', 'main')

    events = await collect(stream_check())
    final = events[-1]

    assert any('log' in event and 'git fetch' in event['log'] for event in events)
    assert final['status'] == 'available'
    assert final['remote'] == new_hash
    assert final['local'] == git(app_dir, 'rev-parse', '--short', 'HEAD')
    assert final['newVersionInfo']['title'] == 'Add hotspot page'
    assert new_hash in final['newVersionInfo']['changelog']
    assert load_update_state()['last_check_status'] == 'available'


@requires_git
async def test_local_commit_is_ahead(git_checkout, app_dir):
    commit_file(app_dir, 'local.txt', 'local change\n', 'Local hotfix')

    final = await check_status()

    assert final['status'] == 'ahead'


@requires_git
async def test_diverged_histories(git_checkout, app_dir):
    upstream = git_checkout
    commit_file(upstream, 'remote.txt', 'remote\n', 'Remote change')
    git(upstream, 'push', '-q', 'origin', 'main')
    commit_file(app_dir, 'local.txt', 'local\n', 'Local change')

    final = await check_status()

    assert final['status'] == 'diverged'


@requires_git
async def test_unreachable_remote_reports_error(git_checkout, app_dir, updater_config):
    save_updater_config({**updater_config, 'remote': 'nowhere'})

    final = await check_status()

    assert final['status'] == 'error'
    assert 'git fetch nowhere main' in final['message']
