import io
import json
import shutil
import subprocess
import sys
import tarfile

import pytest
from aiohttp.test_utils import unused_port

from panelback.auth.jwt_auth import generate_token
from panelback.auth.user_management import create_user
from panelback.config_loader import CONFIG_DIR_ENV, clear_cache, save_updater_config
from panelback.main import init_app

requires_git = pytest.mark.skipif(shutil.which('git') is None, reason='git is not installed')

GIT_IDENTITY = [
    '-c', 'user.name=Panel Tests',
    '-c', 'user.email=tests@panel.local',
    '-c', 'commit.gpgsign=false',
]


def git(cwd, *args) -> str:
    result = subprocess.run(
        ['git', *GIT_IDENTITY, *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def commit_file(repo, relpath, content, message):
    path = repo / relpath
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding='utf-8')
    git(repo, 'add', relpath)
    git(repo, 'commit', '-q', '-m', message)
    return git(repo, 'rev-parse', '--short', 'HEAD')


def read_events(body: str):
    return [json.loads(line[len('data: '):]) for line in body.split('\n') if line.startswith('data: ')]


async def collect(events):
    return [event async for event in events]


def write_archive(path, files=None, links=None):
    """Write a tar.gz with the given {name: bytes} files and {name: target} symlinks."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, 'w:gz') as tar:
        for name, data in (files or {}).items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        for name, target in (links or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tar.addfile(info)
    return path.name


@pytest.fixture(autouse=True)
def config_dir(tmp_path, monkeypatch):
    directory = tmp_path / 'etc'
    monkeypatch.setenv(CONFIG_DIR_ENV, str(directory))
    clear_cache()
    yield directory
    clear_cache()


@pytest.fixture()
def aiohttp_unused_port():
    return unused_port


@pytest.fixture()
def app_dir(tmp_path):
    root = tmp_path / 'app'
    (root / 'src').mkdir(parents=True)
    (root / 'src' / 'main.js').write_text('console.log("v1");\n', encoding='utf-8')
    (root / 'README.md').write_text('# Panel\n', encoding='utf-8')
    (root / 'node_modules' / 'left-pad').mkdir(parents=True)
    (root / 'node_modules' / 'left-pad' / 'index.js').write_text('module.exports = 1;\n', encoding='utf-8')
    (root / '.env').write_text('SECRET=1\n', encoding='utf-8')
    (root / 'panel.db').write_bytes(b'sqlite')
    return root


@pytest.fixture()
def backup_dir(tmp_path):
    return tmp_path / 'backups'


@pytest.fixture()
def updater_config(app_dir, backup_dir):
    config = {
        'app_dir': str(app_dir),
        'backup_dir': str(backup_dir),
        'install_steps': [],
        'backup_retention_count': 0,
        'backup_retention_days': None,
        'restart_command': [sys.executable, '-c', 'pass'],
        'restart_delay_seconds': 0,
        'step_timeout_seconds': 30,
        'fetch_timeout_seconds': 30,
        'health_check_attempts': 2,
        'health_check_initial_delay': 0.01,
        'health_check_max_delay': 0.02,
    }
    assert save_updater_config(config)
    return config


@pytest.fixture()
def restarts(monkeypatch):
    calls = []
    monkeypatch.setattr(
        'panelback.updater.executor.schedule_service_restart',
        lambda *args, **kwargs: calls.append(args),
    )
    return calls


@pytest.fixture()
def git_checkout(tmp_path, app_dir, updater_config):
    """Turn app_dir into a clone of a bare 'origin' and return an upstream clone for pushing."""
    git(app_dir, 'init', '-q')
    git(app_dir, 'symbolic-ref', 'HEAD', 'refs/heads/main')
    (app_dir / '.gitignore').write_text('node_modules/\n.env\n*.db\n', encoding='utf-8')
    git(app_dir, 'add', '-A')
    git(app_dir, 'commit', '-q', '-m', 'Initial release', '-m', 'First version of the panel.')

    origin = tmp_path / 'origin.git'
    git(tmp_path, 'clone', '-q', '--bare', str(app_dir), str(origin))
    git(app_dir, 'remote', 'add', 'origin', str(origin))
    git(app_dir, 'fetch', '-q', 'origin')

    upstream = tmp_path / 'upstream'
    git(tmp_path, 'clone', '-q', str(origin), str(upstream))
    return upstream


@pytest.fixture()
def app(updater_config):
    return init_app()


@pytest.fixture()
async def client(aiohttp_client, app):
    return await aiohttp_client(app)


@pytest.fixture()
def admin_token():
    create_user('admin', 'admin-password', role='admin')
    return generate_token('admin', {'role': 'admin'})


@pytest.fixture()
def user_token():
    create_user('viewer', 'viewer-password', role='user')
    return generate_token('viewer', {'role': 'user'})


@pytest.fixture()
def auth_headers(admin_token):
    return {'Authorization': f'Bearer {admin_token}'}
