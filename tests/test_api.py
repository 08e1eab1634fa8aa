"""Tests for the coordination service HTTP and WebSocket surface."""

import errno

import pytest
from fastapi.testclient import TestClient

from peershare.api.rest import ConnectionManager, create_app
from peershare.config import Config

METADATA = {'name': 'notes.txt', 'size': 11, 'mime_type': 'text/plain'}


@pytest.fixture
def client():
    """Create FastAPI test client."""
    with TestClient(create_app(Config())) as test_client:
        yield test_client


def request(ws, event, data, ack):
    """Send an acknowledged frame and return the reply payload."""
    ws.send_json({'event': event, 'data': data, 'ack': ack})
    reply = ws.receive_json()
    assert reply['event'] == 'ack'
    assert reply['ack'] == ack
    return reply['data']


def greet(ws):
    greeting = ws.receive_json()
    assert greeting['event'] == 'connected'
    return greeting['data']['connection_id']


def test_root_endpoint(client):
    response = client.get('/')
    assert response.status_code == 200
    assert response.json()['status'] == 'running'
    assert response.json()['name'] == 'PeerShare'


def test_receive_page_without_static_dir(client):
    response = client.get('/share/abc')
    assert response.status_code == 200
    assert response.json() == {'share_id': 'abc', 'active': False}


def test_static_pages_are_served(tmp_path):
    (tmp_path / 'index.html').write_text('<h1>send</h1>')
    (tmp_path / 'receive.html').write_text('<h1>receive</h1>')

    with TestClient(create_app(Config(static_dir=tmp_path))) as client:
        assert client.get('/').text == '<h1>send</h1>'
        assert client.get('/share/anything').text == '<h1>receive</h1>'


def test_unknown_share_lookup_is_404(client):
    response = client.get('/shares/missing')
    assert response.status_code == 404
    assert response.json()['detail'] == 'Share not found or expired'


def test_join_unknown_share_is_not_found(client):
    with client.websocket_connect('/ws') as ws:
        greet(ws)
        reply = request(ws, 'join-share', {'share_id': 'missing'}, 1)

    assert reply == {'ok': False, 'error': 'not_found', 'message': 'Share not found or expired'}


def test_malformed_frame_keeps_socket_open(client):
    with client.websocket_connect('/ws') as ws:
        greet(ws)
        ws.send_text('this is not json')
        error = ws.receive_json()
        assert error['event'] == 'error'
        assert error['data']['error'] == 'bad_request'

        reply = request(ws, 'create-share', {}, 7)
        assert reply['ok'] is True


def test_unknown_event_is_bad_request(client):
    with client.websocket_connect('/ws') as ws:
        greet(ws)
        reply = request(ws, 'launch-rockets', {}, 1)
    assert reply['error'] == 'bad_request'


def test_share_flow_over_websocket(client):
    with client.websocket_connect('/ws') as receiver:
        receiver_id = greet(receiver)

        with client.websocket_connect('/ws') as owner:
            greet(owner)
            share_id = request(owner, 'create-share', {}, 1)['share_id']
            assert request(owner, 'publish-metadata', {'share_id': share_id, 'metadata': METADATA}, 2) == {'ok': True}
            assert request(owner, 'publish-owner-id', {'share_id': share_id, 'rendezvous_id': 'owner-abc'}, 3) == {'ok': True}

            receiver.send_json({'event': 'join-share', 'data': {'share_id': share_id}, 'ack': 1})
            owner_id = receiver.receive_json()
            assert owner_id == {
                'event': 'owner-id',
                'data': {'share_id': share_id, 'rendezvous_id': 'owner-abc'},
            }
            joined = receiver.receive_json()
            assert joined['data'] == {'ok': True, 'metadata': METADATA}

            notice = owner.receive_json()
            assert notice['event'] == 'receiver-joined'
            assert notice['data']['receiver_id'] == receiver_id
            assert notice['data']['total_receivers'] == 1

            info = client.get(f'/shares/{share_id}').json()
            assert info['owner_ready'] is True
            assert info['total_receivers'] == 1
            assert info['metadata'] == METADATA

            reply = request(receiver, 'request-download',
                            {'share_id': share_id, 'rendezvous_id': '127.0.0.1:7001'}, 2)
            assert reply == {'ok': True}

            requested = owner.receive_json()
            assert requested == {
                'event': 'download-requested',
                'data': {
                    'share_id': share_id,
                    'receiver_id': receiver_id,
                    'rendezvous_id': '127.0.0.1:7001',
                },
            }

        ended = receiver.receive_json()
        assert ended['event'] == 'share-ended'
        assert ended['data']['message'] == 'File sender disconnected'

    assert client.get(f'/shares/{share_id}').status_code == 404


def test_end_share_notifies_receiver(client):
    with client.websocket_connect('/ws') as owner:
        greet(owner)
        share_id = request(owner, 'create-share', {}, 1)['share_id']

        with client.websocket_connect('/ws') as receiver:
            greet(receiver)
            request(receiver, 'join-share', {'share_id': share_id}, 1)
            assert owner.receive_json()['event'] == 'receiver-joined'

            owner.send_json({'event': 'end-share', 'data': {'share_id': share_id}, 'ack': 2})
            assert owner.receive_json()['event'] == 'share-ended'
            assert owner.receive_json()['data'] == {'ok': True}

            ended = receiver.receive_json()
            assert ended == {
                'event': 'share-ended',
                'data': {'share_id': share_id, 'message': 'Share ended by sender'},
            }


def test_receiver_disconnect_is_reported(client):
    with client.websocket_connect('/ws') as owner:
        greet(owner)
        share_id = request(owner, 'create-share', {}, 1)['share_id']

        with client.websocket_connect('/ws') as receiver:
            greet(receiver)
            request(receiver, 'join-share', {'share_id': share_id}, 1)
            assert owner.receive_json()['event'] == 'receiver-joined'

        notice = owner.receive_json()
        assert notice['event'] == 'receiver-disconnected'
        assert notice['data']['total_receivers'] == 0


def test_stats_endpoint(client):
    with client.websocket_connect('/ws') as owner:
        greet(owner)
        request(owner, 'create-share', {}, 1)
        stats = client.get('/stats').json()

    assert stats['active_shares'] == 1
    assert stats['shares_created'] == 1
    assert stats['connections'] == 1


class DroppedSocket:
    """A socket whose peer vanished without a close frame."""

    async def send_json(self, frame):
        raise OSError(errno.ENOTCONN, "Socket is not connected")


class OpenSocket:
    def __init__(self):
        self.frames = []

    async def send_json(self, frame):
        self.frames.append(frame)


async def test_send_to_dropped_socket_reports_failure():
    manager = ConnectionManager()
    healthy = OpenSocket()
    manager.register('conn-1', DroppedSocket())
    manager.register('conn-2', healthy)

    assert await manager.send('conn-1', 'share-ended', {'share_id': 's'}) is False
    assert await manager.send('conn-2', 'share-ended', {'share_id': 's'}) is True
    assert healthy.frames == [{'event': 'share-ended', 'data': {'share_id': 's'}}]
