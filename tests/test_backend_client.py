"""
Tests for PipelineBackendClient.

The requests Session is real; only ``session.request`` is patched so
header handling and response parsing run unmodified.
"""

import json
import pytest
import requests
from unittest.mock import Mock

from core.client.backend import (
    AuthenticationError,
    BackendError,
    BackendUnavailableError,
    PipelineBackendClient,
)
from core.models.config import BackendConfig
from core.models.entities import StageStatus


def make_response(status_code=200, payload=None, text=None):
    response = requests.Response()
    response.status_code = status_code
    if payload is not None:
        response._content = json.dumps(payload).encode('utf-8')
    else:
        response._content = (text or '').encode('utf-8')
    return response


class TestPipelineBackendClient:
    """Test request building and response handling"""

    @pytest.fixture
    def session(self):
        session = requests.Session()
        session.request = Mock(return_value=make_response(payload={'success': True, 'data': []}))
        return session

    @pytest.fixture
    def client(self, session):
        config = BackendConfig(base_url="https://api.example.com/", api_key="key-1", user_token="user-1")
        return PipelineBackendClient(config, session=session)

    def test_headers(self, client, session):
        assert session.headers['Authorization'] == "Bearer key-1"
        assert session.headers['X-User-Token'] == "Bearer user-1"

    def test_set_user_token(self, client, session):
        client.set_user_token("user-2")
        assert session.headers['X-User-Token'] == "Bearer user-2"

        client.set_user_token(None)
        assert 'X-User-Token' not in session.headers

    @pytest.mark.asyncio
    async def test_list_entities(self, client, session):
        session.request.return_value = make_response(payload={
            'success': True,
            'data': [
                {'id': 'p1', 'name': 'Kettle', 'step0Status': 'completed', 'step1Status': 'running'},
                {'name': 'no id'},
            ],
        })

        entities = await client.list_entities("tenant-a")

        method, url = session.request.call_args.args
        assert method == 'GET'
        assert url == "https://api.example.com/api/products"
        assert session.request.call_args.kwargs['params'] == {'client_id': 'tenant-a', 'minimal': 'true'}
        assert [e.id for e in entities] == ['p1']
        assert entities[0].status_of(0) == StageStatus.COMPLETED
        assert entities[0].status_of(1) == StageStatus.RUNNING

    @pytest.mark.asyncio
    async def test_get_stage_detail(self, client, session):
        session.request.return_value = make_response(payload={
            'success': True,
            'data': {
                'id': 'p1',
                'step4Results': {'compliance_updates': [{'regulation': 'GPSR', 'impact': 'high'}]},
            },
        })

        result = await client.get_stage_detail('p1', 4, 'tenant-a')

        assert result.stage == 4
        assert result.records[0].name == 'GPSR'
        assert session.request.call_args.args[1].endswith('/api/products/p1')

    @pytest.mark.asyncio
    async def test_execute_and_stop_paths(self, client, session):
        session.request.return_value = make_response(payload={'success': True, 'message': 'started'})

        result = await client.execute_stage('p1', 2, tenant_id='tenant-a')
        assert result == {'message': 'started'}
        assert session.request.call_args.args == ('POST', "https://api.example.com/api/products/p1/execute-step2")

        await client.stop_stage('p1', 2)
        assert session.request.call_args.args[1].endswith('/api/products/p1/stop-step2')

    @pytest.mark.asyncio
    async def test_invalid_stage(self, client):
        with pytest.raises(ValueError):
            await client.execute_stage('p1', 5)

    @pytest.mark.asyncio
    async def test_unauthorized(self, client, session):
        session.request.return_value = make_response(401, payload={'detail': 'token expired'})

        with pytest.raises(AuthenticationError) as exc_info:
            await client.list_entities("tenant-a")
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == 'token expired'

    @pytest.mark.asyncio
    async def test_server_error_detail(self, client, session):
        session.request.return_value = make_response(500, payload={'message': 'worker crashed'})

        with pytest.raises(BackendError) as exc_info:
            await client.execute_stage('p1', 0)
        assert exc_info.value.detail == 'worker crashed'
        assert client.get_stats()['failed_requests'] == 1

    @pytest.mark.asyncio
    async def test_envelope_failure(self, client, session):
        session.request.return_value = make_response(payload={'success': False, 'error': 'no such product'})

        with pytest.raises(BackendError, match='no such product'):
            await client.get_summary('tenant-a')

    @pytest.mark.asyncio
    async def test_transport_failure(self, client, session):
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(BackendUnavailableError):
            await client.list_entities("tenant-a")

    @pytest.mark.asyncio
    async def test_create_notification_drops_empty_fields(self, client, session):
        await client.create_notification('tenant-a', 'error', 'Failed', 'Stage 1 failed', product_id='p1', step=1)

        body = session.request.call_args.kwargs['json']
        assert body == {
            'client_id': 'tenant-a',
            'type': 'error',
            'title': 'Failed',
            'message': 'Stage 1 failed',
            'product_id': 'p1',
            'step': 1,
            'priority': 'medium',
        }

    @pytest.mark.asyncio
    async def test_log_event_never_raises(self, client, session):
        session.request.side_effect = requests.Timeout("slow")
        assert await client.log_event('step_executed', 'tenant-a', entity_id='p1') is False

    @pytest.mark.asyncio
    async def test_log_event_requires_tenant(self, client, session):
        assert await client.log_event('step_executed', None) is False
        session.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_summary_plain_value(self, client, session):
        session.request.return_value = make_response(payload={'success': True, 'data': 'All quiet'})
        assert await client.get_summary('tenant-a') == {'summary': 'All quiet'}
