"""
Tests for the HTTP API and live feed websockets
"""
import pytest
from faker import Faker
from httpx import AsyncClient

from exceptions import QueryPreconditionError, WriteError
from schemas import NOTES, USERS

fake = Faker()

DOUBT = {'subject': 'DSA', 'description': 'How does Dijkstra handle ties?'}
NOTE = {
    'topic': 'Dijkstra walkthrough',
    'subject': 'DSA',
    'resource_type': 'youtube',
    'url': 'https://www.youtube.com/watch?v=abc123',
}


def _bearer(session) -> dict:
    return {'Authorization': f"Bearer {session.access_token}"}


class TestRoot:

    @pytest.mark.asyncio
    async def test_root(self, client: AsyncClient):
        response = await client.get('/')
        assert response.status_code == 200
        assert response.json() == {'message': 'StudySync API running'}

    @pytest.mark.asyncio
    async def test_database_status(self, client: AsyncClient):
        data = (await client.get('/test')).json()
        assert data['backend'] == 'running'
        assert data['database'] == 'not configured'

    @pytest.mark.asyncio
    async def test_request_id_header(self, client: AsyncClient):
        response = await client.get('/', headers={'X-Request-ID': 'abc123'})
        assert response.headers['X-Request-ID'] == 'abc123'


class TestSignup:

    @pytest.mark.asyncio
    async def test_signup_success(self, client: AsyncClient, store, signup_data):
        response = await client.post('/api/auth/signup', json=signup_data)

        assert response.status_code == 201
        data = response.json()
        assert data['success'] is True
        assert data['profile_saved'] is True
        assert data['session']['access_token']
        assert 'password' not in data['values']
        uid = data['session']['identity']['uid']
        assert store.get(USERS, uid)['name'] == signup_data['name']

    @pytest.mark.asyncio
    async def test_signup_invalid_fields(self, client: AsyncClient, store):
        response = await client.post('/api/auth/signup', json={
            'name': fake.name(), 'email': 'not-an-email', 'password': 'securePassword123',
        })

        assert response.status_code == 422
        data = response.json()
        assert data['field_errors'] == {'email': ['Invalid email address.']}
        assert data['values']['email'] == 'not-an-email'
        assert 'password' not in data['values']
        assert store.write_calls == []

    @pytest.mark.asyncio
    async def test_signup_duplicate_email(self, client: AsyncClient, signup_data):
        await client.post('/api/auth/signup', json=signup_data)
        response = await client.post('/api/auth/signup', json=signup_data)

        assert response.status_code == 409
        assert response.json()['error']['code'] == 'EMAIL_IN_USE'

    @pytest.mark.asyncio
    async def test_signup_profile_failure(self, client: AsyncClient, store, signup_data):
        store.failing_writes[USERS] = WriteError('offline', collection=USERS)

        response = await client.post('/api/auth/signup', json=signup_data)

        assert response.status_code == 201
        data = response.json()
        assert data['profile_saved'] is False
        assert data['error']['code'] == 'PROFILE_SAVE_FAILED'
        assert data['session']['access_token']


class TestSessions:

    @pytest.mark.asyncio
    async def test_login_and_me(self, client: AsyncClient, signup_data):
        await client.post('/api/auth/signup', json=signup_data)

        response = await client.post('/api/auth/login', json={
            'email': signup_data['email'], 'password': signup_data['password'],
        })
        assert response.status_code == 200
        token = response.json()['session']['access_token']

        me = await client.get('/api/auth/me', headers={'Authorization': f'Bearer {token}'})
        assert me.status_code == 200
        assert me.json()['profile']['upvote_score'] == 0

    @pytest.mark.asyncio
    async def test_login_wrong_password(self, client: AsyncClient, signup_data):
        await client.post('/api/auth/signup', json=signup_data)

        response = await client.post('/api/auth/login', json={
            'email': signup_data['email'], 'password': 'wrongPassword',
        })

        assert response.status_code == 401
        assert response.json()['error']['code'] == 'INVALID_CREDENTIAL'
        assert 'password' not in response.json()['values']

    @pytest.mark.asyncio
    async def test_logout_revokes_token(self, client: AsyncClient, auth_headers):
        assert (await client.get('/api/auth/me', headers=auth_headers)).status_code == 200

        assert (await client.post('/api/auth/logout', headers=auth_headers)).status_code == 200

        response = await client.get('/api/auth/me', headers=auth_headers)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_me_requires_token(self, client: AsyncClient):
        response = await client.get('/api/auth/me')
        assert response.status_code == 401
        assert response.json()['success'] is False


class TestDoubts:

    @pytest.mark.asyncio
    async def test_post_requires_login(self, client: AsyncClient, store):
        response = await client.post('/api/doubts', json=DOUBT)
        assert response.status_code == 401
        assert store.write_calls == []

    @pytest.mark.asyncio
    async def test_post_and_list(self, client: AsyncClient, auth_headers):
        response = await client.post('/api/doubts', json=DOUBT, headers=auth_headers)
        assert response.status_code == 201
        doubt_id = response.json()['id']

        mine = (await client.get('/api/doubts', headers=auth_headers)).json()['items']
        anonymous = (await client.get('/api/doubts')).json()['items']

        assert [d['id'] for d in mine] == [doubt_id]
        assert mine[0]['can_resolve'] is True
        assert mine[0]['is_resolved'] is False
        assert anonymous[0]['can_resolve'] is False

    @pytest.mark.asyncio
    async def test_invalid_doubt_keeps_values(self, client: AsyncClient, auth_headers, store):
        response = await client.post('/api/doubts', json={'subject': 'DSA', 'description': 'short'}, headers=auth_headers)

        assert response.status_code == 422
        data = response.json()
        assert data['values'] == {'subject': 'DSA', 'description': 'short'}
        assert data['field_errors']['description'] == ['Description must be at least 10 characters.']
        assert [c for c in store.write_calls if c[1] == 'doubts'] == []

    @pytest.mark.asyncio
    async def test_resolve(self, client: AsyncClient, auth, auth_headers):
        doubt_id = (await client.post('/api/doubts', json=DOUBT, headers=auth_headers)).json()['id']
        other = auth.create_identity(fake.email(), 'securePassword123', fake.name())

        forbidden = await client.post(f'/api/doubts/{doubt_id}/resolve', headers=_bearer(other))
        assert forbidden.status_code == 403
        assert forbidden.json()['error']['code'] == 'NOT_AUTHORIZED'

        resolved = await client.post(f'/api/doubts/{doubt_id}/resolve', headers=auth_headers)
        assert resolved.status_code == 200

        items = (await client.get('/api/doubts', headers=auth_headers)).json()['items']
        assert items[0]['is_resolved'] is True
        assert items[0]['can_resolve'] is False

    @pytest.mark.asyncio
    async def test_resolve_missing_doubt(self, client: AsyncClient, auth_headers):
        response = await client.post('/api/doubts/missing/resolve', headers=auth_headers)
        assert response.status_code == 404
        assert response.json()['error']['code'] == 'DOUBT_NOT_FOUND'

    @pytest.mark.asyncio
    async def test_unconfigured_database(self, client: AsyncClient, store):
        store.configured = False
        response = await client.get('/api/doubts')
        assert response.status_code == 503
        assert response.json()['error']['code'] == 'CONFIGURATION_ERROR'

    @pytest.mark.asyncio
    async def test_dashboard_unconfigured(self, client: AsyncClient, auth_headers, store):
        store.configured = False

        response = await client.get('/api/dashboard', headers=auth_headers)

        assert response.status_code == 503
        assert response.json()['error']['code'] == 'CONFIGURATION_ERROR'


class TestAnswers:

    @pytest.mark.asyncio
    async def test_answer_and_list(self, client: AsyncClient, auth_headers):
        doubt_id = (await client.post('/api/doubts', json=DOUBT, headers=auth_headers)).json()['id']

        response = await client.post(f'/api/doubts/{doubt_id}/answers', json={'text': 'Use a heap.'}, headers=auth_headers)
        assert response.status_code == 201

        items = (await client.get(f'/api/doubts/{doubt_id}/answers')).json()['items']
        assert [a['text'] for a in items] == ['Use a heap.']

    @pytest.mark.asyncio
    async def test_answer_to_missing_doubt(self, client: AsyncClient, auth_headers, store):
        response = await client.post('/api/doubts/missing/answers', json={'text': 'Hello'}, headers=auth_headers)

        assert response.status_code == 404
        data = response.json()
        assert data['error']['code'] == 'DOUBT_NOT_FOUND'
        assert data['values'] == {'text': 'Hello'}
        assert [c for c in store.write_calls if c[1] == 'answers'] == []

    @pytest.mark.asyncio
    async def test_blank_answer(self, client: AsyncClient, auth_headers):
        doubt_id = (await client.post('/api/doubts', json=DOUBT, headers=auth_headers)).json()['id']
        response = await client.post(f'/api/doubts/{doubt_id}/answers', json={'text': ' '}, headers=auth_headers)
        assert response.status_code == 422


class TestNotesAndDashboard:

    @pytest.mark.asyncio
    async def test_share_and_list(self, client: AsyncClient, auth_headers):
        response = await client.post('/api/notes', json=NOTE, headers=auth_headers)
        assert response.status_code == 201

        items = (await client.get('/api/notes')).json()['items']
        assert items[0]['resource_url'] == NOTE['url']
        assert items[0]['resource_type'] == 'youtube'

    @pytest.mark.asyncio
    async def test_wrong_url_for_type(self, client: AsyncClient, auth_headers):
        response = await client.post('/api/notes', json={**NOTE, 'resource_type': 'drive'}, headers=auth_headers)
        assert response.status_code == 422
        assert response.json()['field_errors'] == {
            'url': ['Please enter a valid URL for the selected resource type.'],
        }

    @pytest.mark.asyncio
    async def test_dashboard_degrades_per_tab(self, client: AsyncClient, auth_headers, store):
        await client.post('/api/doubts', json=DOUBT, headers=auth_headers)
        store.failing_queries[NOTES] = QueryPreconditionError(NOTES)

        response = await client.get('/api/dashboard', headers=auth_headers)

        assert response.status_code == 200
        tabs = {tab['key']: tab for tab in response.json()['tabs']}
        assert len(tabs['doubts']['items']) == 1
        assert tabs['notes']['error']['code'] == 'QUERY_PRECONDITION_FAILED'
        assert tabs['answers']['error'] is None
        assert tabs['answers']['message'] == "You haven't answered any doubts yet."

    @pytest.mark.asyncio
    async def test_dashboard_requires_login(self, client: AsyncClient):
        assert (await client.get('/api/dashboard')).status_code == 401


class TestLiveFeeds:

    def test_doubts_feed_updates(self, ws_client, auth_headers):
        token = auth_headers['Authorization'].split()[1]
        with ws_client.websocket_connect(f'/ws/doubts?token={token}') as ws:
            assert ws.receive_json() == {'status': 'ok', 'items': []}

            ws_client.post('/api/doubts', json=DOUBT, headers=auth_headers)

            snapshot = ws.receive_json()
            assert snapshot['status'] == 'ok'
            assert len(snapshot['items']) == 1
            assert snapshot['items'][0]['can_resolve'] is True

    def test_answers_feed(self, ws_client, auth_headers):
        doubt_id = ws_client.post('/api/doubts', json=DOUBT, headers=auth_headers).json()['id']

        with ws_client.websocket_connect(f'/ws/doubts/{doubt_id}/answers') as ws:
            assert ws.receive_json()['items'] == []

            ws_client.post(f'/api/doubts/{doubt_id}/answers', json={'text': 'Use a heap.'}, headers=auth_headers)

            assert [a['text'] for a in ws.receive_json()['items']] == ['Use a heap.']

    def test_answers_feed_for_missing_doubt(self, ws_client):
        with ws_client.websocket_connect('/ws/doubts/missing/answers') as ws:
            message = ws.receive_json()
        assert message['status'] == 'error'
        assert message['error']['code'] == 'DOUBT_NOT_FOUND'

    def test_notes_feed_reports_missing_index(self, ws_client, store):
        store.failing_queries[NOTES] = QueryPreconditionError(NOTES)

        with ws_client.websocket_connect('/ws/notes') as ws:
            message = ws.receive_json()

        assert message['status'] == 'error'
        assert message['error']['code'] == 'QUERY_PRECONDITION_FAILED'

    def test_sign_out_hides_resolve_on_open_feed(self, ws_client, auth, auth_headers):
        token = auth_headers['Authorization'].split()[1]
        other = auth.create_identity('ravi@example.com', 'securePassword456', 'Ravi Kumar')
        other_headers = {'Authorization': f'Bearer {other.access_token}'}

        with ws_client.websocket_connect(f'/ws/doubts?token={token}') as ws:
            ws.receive_json()
            ws_client.post('/api/doubts', json=DOUBT, headers=auth_headers)
            assert ws.receive_json()['items'][0]['can_resolve'] is True

            assert ws_client.post('/api/auth/logout', headers=auth_headers).status_code == 200
            ws_client.post('/api/doubts', json=DOUBT, headers=other_headers)

            snapshot = ws.receive_json()
            assert len(snapshot['items']) == 2
            assert not any(item['can_resolve'] for item in snapshot['items'])

    def test_repeated_connect_and_close(self, ws_client, auth_headers, store):
        token = auth_headers['Authorization'].split()[1]
        for _ in range(20):
            with ws_client.websocket_connect(f'/ws/doubts?token={token}') as ws:
                assert ws.receive_json() == {'status': 'ok', 'items': []}
            with ws_client.websocket_connect('/ws/notes') as ws:
                assert ws.receive_json()['status'] == 'ok'
        assert store.subscriptions == []
