def test_socket_connect_and_join(sio_client):
    # Ensure we are connected to /ws
    if not sio_client.is_connected('/ws'):
        sio_client.connect(namespace='/ws')
    assert sio_client.is_connected('/ws')

    # Flush any initial events
    try:
        sio_client.get_received('/ws')
    except Exception:
        pass

    sio_client.emit('join_round', {'round_id': 7, 'attempt_id': 3}, namespace='/ws')
    received = sio_client.get_received('/ws')
    joined = [pkt for pkt in received if pkt['name'] == 'joined']
    assert joined
    assert joined[0]['args'][0]['rooms'] == ['round:7', 'attempt:3']


def test_join_requires_round_id(sio_client):
    sio_client.get_received('/ws')
    sio_client.emit('join_round', {}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert any(pkt['name'] == 'error' for pkt in received)


def test_ping_pong(sio_client):
    sio_client.get_received('/ws')
    sio_client.emit('ping', {'n': 1}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert any(pkt['name'] == 'pong' and pkt['args'][0] == {'n': 1} for pkt in received)


def test_round_completed_is_broadcast(sio_client, admin_client, make_round, finished_attempt):
    rnd = make_round()
    a = finished_attempt(rnd, 45.0)

    sio_client.emit('join_round', {'round_id': rnd.id}, namespace='/ws')
    sio_client.get_received('/ws')  # flush

    res = admin_client.post(f'/api/rounds/{rnd.id}/select', json={'method': 'fastest_time'})
    assert res.status_code == 201

    events = sio_client.get_received('/ws')
    completed = [e for e in events if e['name'] == 'round_completed']
    assert completed
    assert completed[0]['args'][0]['winner_attempt_id'] == a.id


def test_attempt_updates_reach_the_attempt_room(sio_client, client, make_round, make_attempt):
    rnd = make_round()
    attempt = make_attempt(rnd)

    sio_client.emit('join_round', {'round_id': rnd.id, 'attempt_id': attempt.id}, namespace='/ws')
    sio_client.get_received('/ws')  # flush

    client.post(f'/api/attempts/{attempt.id}/start')
    events = sio_client.get_received('/ws')
    updates = [e for e in events if e['name'] == 'attempt_update']
    assert updates
    assert updates[0]['args'][0]['state'] == 'running'


def test_leave_round(sio_client):
    sio_client.emit('join_round', {'round_id': 2}, namespace='/ws')
    sio_client.get_received('/ws')
    sio_client.emit('leave_round', {'round_id': 2}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert any(pkt['name'] == 'left' and pkt['args'][0]['rooms'] == ['round:2'] for pkt in received)
