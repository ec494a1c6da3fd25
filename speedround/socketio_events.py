from flask_socketio import join_room, leave_room, emit
from speedround import socketio


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def _room_for(data, key: str, prefix: str):
    value = (data or {}).get(key)
    try:
        return f"{prefix}:{int(value)}"
    except (TypeError, ValueError):
        emit('error', {'message': f'{key} is required'})
        return None


def handle_join_round(data):
    """Spectators and players follow a round; an attempt_id also subscribes to its updates."""
    room = _room_for(data, 'round_id', 'round')
    if room is None:
        return
    join_room(room)
    joined = [room]
    if (data or {}).get('attempt_id') is not None:
        attempt_room = _room_for(data, 'attempt_id', 'attempt')
        if attempt_room is None:
            return
        join_room(attempt_room)
        joined.append(attempt_room)
    emit('joined', {'rooms': joined})


def handle_leave_round(data):
    room = _room_for(data, 'round_id', 'round')
    if room is None:
        return
    leave_room(room)
    left = [room]
    if (data or {}).get('attempt_id') is not None:
        attempt_room = _room_for(data, 'attempt_id', 'attempt')
        if attempt_room is None:
            return
        leave_room(attempt_room)
        left.append(attempt_room)
    emit('left', {'rooms': left})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    socketio.on_event('connect', handle_connect, namespace='/ws')
    socketio.on_event('join_round', handle_join_round, namespace='/ws')
    socketio.on_event('leave_round', handle_leave_round, namespace='/ws')
    socketio.on_event('ping', handle_ping, namespace='/ws')

    if testing:
        socketio.on_event('connect', handle_connect, namespace='/')
        socketio.on_event('join_round', handle_join_round, namespace='/')
        socketio.on_event('leave_round', handle_leave_round, namespace='/')
        socketio.on_event('ping', handle_ping, namespace='/')
