"""
Tests for the REST API.
"""
import pytest

from timetabler import api

from conftest import two_lessons


@pytest.fixture
def client():
    api.app.config['TESTING'] = True
    with api.app.test_client() as client:
        yield client
    for thread in list(api.threads.values()):
        thread.join()
    api.engines.clear()
    api.handles.clear()
    api.threads.clear()


def create_engine(client, config=None):
    response = client.post('/api/v1/engines', json=config or {})
    assert response.status_code == 201
    return response.get_json()['id']


class TestApi:
    """Test the engine endpoints."""

    def test_health(self, client):
        response = client.get('/api/v1/health')
        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'

    def test_create_and_list(self, client):
        engine_id = create_engine(client, {'maxBacktracks': 5})

        record = client.get(f'/api/v1/engines/{engine_id}').get_json()
        assert record['state'] == 'idle'
        assert record['config']['maxBacktracks'] == 5

        engines = client.get('/api/v1/engines').get_json()['engines']
        assert [e['id'] for e in engines] == [engine_id]

    def test_invalid_config(self, client):
        response = client.post('/api/v1/engines', json={'multiStart': 0})
        assert response.status_code == 400
        assert 'multi_start' in response.get_json()['message']

    def test_unknown_engine(self, client):
        response = client.get('/api/v1/engines/nope')
        assert response.status_code == 404
        assert response.get_json()['status'] == 404

    def test_generate_flow(self, client, small_raw):
        """Test loading a model, generating in the background and fetching the result."""
        engine_id = create_engine(client)

        response = client.post(f'/api/v1/engines/{engine_id}/model', json=small_raw)
        assert response.status_code == 200
        record = response.get_json()
        assert record['state'] == 'loaded'
        assert record['model']['lessons'] == 16

        response = client.post(f'/api/v1/engines/{engine_id}/generate', json={})
        assert response.status_code == 202
        api.threads[engine_id].join()

        response = client.get(f'/api/v1/engines/{engine_id}/result')
        assert response.status_code == 200
        result = response.get_json()
        assert result['status'] == 'ready'
        assert result['exit_code'] == 0
        assert len(result['timetable']) == 16
        assert client.get(f'/api/v1/engines/{engine_id}').get_json()['state'] == 'ready'

    def test_infeasible_result(self, client, single_shared_slot_raw):
        engine_id = create_engine(client)
        client.post(f'/api/v1/engines/{engine_id}/model', json=single_shared_slot_raw)
        client.post(f'/api/v1/engines/{engine_id}/generate')
        api.threads[engine_id].join()

        result = client.get(f'/api/v1/engines/{engine_id}/result').get_json()
        assert result['status'] == 'infeasible'
        assert result['exit_code'] == 1
        assert result['conflict']['lessons'] == ['C#1', 'C#2']

    def test_model_error(self, client):
        engine_id = create_engine(client)
        response = client.post(f'/api/v1/engines/{engine_id}/model',
                               json=two_lessons(teacher_available=['0:0']))

        assert response.status_code == 422
        body = response.get_json()
        assert body['kind'] == 'overcommitted'
        assert body['entities'] == ['T']

        error = client.get(f'/api/v1/engines/{engine_id}/error').get_json()
        assert 'overcommitted' in error['last_error']

    def test_model_requires_json(self, client):
        engine_id = create_engine(client)
        response = client.post(f'/api/v1/engines/{engine_id}/model', data='not json')
        assert response.status_code == 400

    def test_generate_without_model(self, client):
        engine_id = create_engine(client)
        response = client.post(f'/api/v1/engines/{engine_id}/generate')
        assert response.status_code == 409
        assert client.get(f'/api/v1/engines/{engine_id}/result').status_code == 404

    def test_cancel(self, client):
        engine_id = create_engine(client)
        response = client.post(f'/api/v1/engines/{engine_id}/cancel')
        assert response.status_code == 200

    def test_delete(self, client):
        engine_id = create_engine(client)
        response = client.delete(f'/api/v1/engines/{engine_id}')
        assert response.status_code == 200
        assert client.get(f'/api/v1/engines/{engine_id}').status_code == 404

    def test_generation_job_for_deleted_engine(self, client):
        assert api.run_generation_job('missing', None) is None
        assert 'missing' not in api.engines

    def test_generation_job_records_unexpected_errors(self, client, monkeypatch, small_raw):
        """Test that a failure inside a generation thread is stored on the engine record."""
        engine_id = create_engine(client)
        assert client.post(f'/api/v1/engines/{engine_id}/model', json=small_raw).status_code == 200

        def failing_generate(handle, previous=None):
            raise RuntimeError("solver crashed")

        monkeypatch.setattr(api.engine, 'generate', failing_generate)
        api.run_generation_job(engine_id, None)

        record = api.engines[engine_id]
        assert record['error'] == "solver crashed"
        assert record['completed_at'] is not None
        assert record['result'] is None
