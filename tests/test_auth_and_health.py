import asyncio
import logging
import sys
import threading
from types import SimpleNamespace

import jwt
from aiohttp.test_utils import make_mocked_request

from panelback.auth.jwt_auth import load_auth_config
from panelback.auth.user_management import authenticate_user, create_user, ensure_default_admin, load_users
from panelback.config_loader import load_update_state, save_updater_config
from panelback.main import AccessLogger
from panelback.updater import health as health_module
from panelback.updater.health import confirm_restart, mark_pending_restart, schedule_service_restart, wait_until_healthy


async def test_health_is_public(client):
    response = await client.get('/api/health')
    payload = await response.json()

    assert response.status == 200
    assert payload['status'] == 'healthy'
    assert payload['operation'] is None


async def test_updater_endpoints_require_authentication(client):
    for path in ('/api/update/status', '/api/update/check', '/api/update/backups'):
        response = await client.get(path)
        assert response.status == 401
        assert (await response.json())['status'] == 'error'


async def test_invalid_token_is_rejected(client):
    response = await client.get('/api/update/status', headers={'Authorization': 'Bearer not-a-token'})
    assert response.status == 401


async def test_updater_endpoints_require_admin(client, user_token):
    response = await client.get('/api/update/status', headers={'Authorization': f'Bearer {user_token}'})
    assert response.status == 403


async def test_login_verify_and_refresh(client):
    create_user('admin', 'correct horse', role='admin')

    wrong = await client.post('/api/auth/login', json={'username': 'admin', 'password': 'nope'})
    assert wrong.status == 401

    login = await client.post('/api/auth/login', json={'username': 'admin', 'password': 'correct horse'})
    payload = await login.json()
    assert login.status == 200
    assert payload['user'] == {'username': 'admin', 'role': 'admin'}

    headers = {'Authorization': f"Bearer {payload['token']}"}
    verify = await client.get('/api/auth/verify', headers=headers)
    assert (await verify.json())['user']['username'] == 'admin'

    refreshed = await client.post('/api/auth/refresh', headers=headers)
    new_token = (await refreshed.json())['token']
    claims = jwt.decode(new_token, load_auth_config()['jwt_secret'], algorithms=['HS256'])
    assert claims['username'] == 'admin'
    assert claims['role'] == 'admin'


async def test_login_requires_credentials(client):
    response = await client.post('/api/auth/login', json={'username': 'admin'})
    assert response.status == 400


async def test_cors_preflight_passes_without_token(client):
    response = await client.options('/api/update/status')

    assert response.status == 200
    assert response.headers['Access-Control-Allow-Origin'] == '*'


def test_default_admin_is_created_once(config_dir):
    password = ensure_default_admin()

    assert password
    assert authenticate_user('admin', password)
    assert load_users()['users']['admin']['role'] == 'admin'
    assert load_users()['users']['admin']['password_hash'] != password
    assert ensure_default_admin() is None


async def test_wait_until_healthy_against_running_server(client):
    result = await wait_until_healthy(str(client.make_url('/api/health')), attempts=3, initial_delay=0.01)

    assert result['healthy'] is True
    assert result['attempts'] == 1


async def test_wait_until_healthy_gives_up(aiohttp_unused_port):
    url = f'http://127.0.0.1:{aiohttp_unused_port()}/api/health'

    result = await wait_until_healthy(url, attempts=3, initial_delay=0.01, max_delay=0.02, request_timeout=1)

    assert result['healthy'] is False
    assert result['attempts'] == 3
    assert result['error']


async def test_pending_restart_is_confirmed(client, updater_config):
    mark_pending_restart('update', expected_hash='abc1234')

    outcome = await confirm_restart(str(client.make_url('/api/health')))
    state = load_update_state()

    assert outcome['healthy'] is True
    assert outcome['operation'] == 'update'
    assert outcome['expected_hash'] == 'abc1234'
    assert state['pending_restart'] is None
    assert state['restart'] == outcome


async def test_confirm_restart_without_pending_marker(updater_config):
    assert await confirm_restart('http://127.0.0.1:1/api/health') is None


async def test_schedule_service_restart_runs_command(updater_config, tmp_path):
    marker = tmp_path / 'restarted'
    save_updater_config({
        **updater_config,
        'restart_command': [sys.executable, '-c', f'open({str(marker)!r}, "w").close()'],
    })

    await schedule_service_restart(delay_seconds=0)

    assert marker.exists()


async def test_scheduled_restart_is_kept_alive_until_done(updater_config):
    task = schedule_service_restart(delay_seconds=30)

    assert task in health_module._restart_tasks

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    await asyncio.sleep(0)

    assert task not in health_module._restart_tasks


async def test_restart_confirmation_reads_version_off_the_loop(client, updater_config, monkeypatch):
    loop_thread = threading.get_ident()
    threads = []

    def fake_version():
        threads.append(threading.get_ident())
        return {'title': 'Release v2', 'hash': 'abc1234', 'description': ''}

    monkeypatch.setattr(health_module, 'get_current_version', fake_version)
    mark_pending_restart('update', expected_hash='abc1234')

    outcome = await confirm_restart(str(client.make_url('/api/health')))

    assert outcome['hash'] == 'abc1234'
    assert threads and threads[0] != loop_thread


def test_access_log_omits_query_string(caplog):
    access_logger = AccessLogger(logging.getLogger('aiohttp.access'), '')
    request = make_mocked_request('GET', '/api/update/check?token=secret-jwt')
    response = SimpleNamespace(status=200, body_length=42)

    with caplog.at_level(logging.INFO, logger='aiohttp.access'):
        access_logger.log(request, response, 0.25)

    assert '"GET /api/update/check" 200 42' in caplog.text
    assert 'secret-jwt' not in caplog.text
