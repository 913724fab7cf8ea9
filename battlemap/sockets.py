# battlemap/sockets.py
# All SocketIO event handlers

import logging

from flask import request
from flask_socketio import emit as socketio_emit, join_room, leave_room

from battlemap import auth
from battlemap import broadcaster as events
from battlemap.camera import parse_viewport
from battlemap.errors import BattlemapError, ValidationError
from battlemap.geometry import Rect, parse_path, parse_point

ROLE_HOST = 'host'
ROLE_OBSERVER = 'observer'


def _viewport_from(data):
    viewport = data.get('viewport') if isinstance(data, dict) else None
    if not isinstance(viewport, dict): return None
    try: return parse_viewport((viewport.get('width'), viewport.get('height')))
    except ValidationError: return None


def register_socket_handlers(sio, manager):
    """Register all SocketIO event handlers on the given SocketIO instance."""

    def _host_for_request():
        session = manager.session_for(request.sid)
        host = session.hosts.get(request.sid) if session else None
        if host is None:
            logging.warning(f"Non-host client {request.sid} sent a host event, rejected.")
            return None, None
        return session, host

    def _run_host(action):
        session, host = _host_for_request()
        if host is None: return
        try:
            with session.lock: action(host)
        except BattlemapError as e:
            logging.error(f"Host event from {request.sid} failed: {e}")
        except Exception as e:
            logging.error(f"Unexpected error handling host event from {request.sid}: {e}", exc_info=True)

    @sio.on('connect')
    def handle_connect():
        logging.info(f"Client connected: {request.sid}")

    @sio.on('disconnect')
    def handle_disconnect(*_args):
        session_id = manager.disconnect(request.sid)
        logging.info(f"Client disconnected: {request.sid} (session {session_id})")

    @sio.on('join_session')
    def handle_join_session(data):
        """Join a session room as host or observer and receive the full snapshot."""
        if not isinstance(data, dict): logging.warning("Invalid join_session payload."); return
        session_id = data.get('sessionId'); role = data.get('role') or ROLE_OBSERVER
        try:
            if role == ROLE_HOST and auth.is_host(session_id):
                session = manager.attach_host(session_id, request.sid, _viewport_from(data)).session
            else:
                if role == ROLE_HOST: logging.warning(f"Unverified host join from {request.sid} for {session_id}; joining as observer.")
                role = ROLE_OBSERVER
                session = manager.join(session_id, request.sid)
                viewport = _viewport_from(data)
                if viewport:
                    with session.lock: session.report_observer_viewport(request.sid, viewport)
        except BattlemapError as e:
            logging.warning(f"join_session rejected for {request.sid}: {e}")
            socketio_emit('join-rejected', {'error': str(e)}, to=request.sid)
            return
        join_room(session_id)
        logging.info(f"Client {request.sid} joined session {session_id} as {role}")
        with session.lock: snapshot = session.snapshot()
        socketio_emit('joined', {'sessionId': session_id, 'role': role}, to=request.sid)
        socketio_emit('initial-state', snapshot, to=request.sid)

    @sio.on('request_initial_state')
    def handle_request_initial_state(data=None):
        session = manager.session_for(request.sid)
        if session is None: logging.warning(f"initial state requested by {request.sid} before joining."); return
        with session.lock: snapshot = session.snapshot()
        socketio_emit('initial-state', snapshot, to=request.sid)

    @sio.on('leave_session')
    def handle_leave_session(data=None):
        session_id = manager.disconnect(request.sid)
        if session_id: leave_room(session_id)

    @sio.on('observer_viewport')
    def handle_observer_viewport(data):
        session = manager.session_for(request.sid)
        viewport = _viewport_from({'viewport': data})
        if session is None or viewport is None: logging.debug(f"Ignoring observer_viewport from {request.sid}"); return
        with session.lock: session.report_observer_viewport(request.sid, viewport)

    # --- Host camera and tools ---

    @sio.on('host_viewport')
    def handle_host_viewport(data):
        if not isinstance(data, dict): return
        _run_host(lambda h: h.set_viewport(data.get('width'), data.get('height')))

    @sio.on('host_tool')
    def handle_host_tool(data):
        if not isinstance(data, dict): return
        _run_host(lambda h: h.set_tool(data.get('tool'), data.get('brushWidth')))

    @sio.on('host_pointer_down')
    def handle_host_pointer_down(data):
        try: x, y = parse_point(data)
        except ValidationError: logging.debug("Malformed host_pointer_down."); return
        button = data.get('button', 0) if isinstance(data, dict) else 0
        _run_host(lambda h: h.pointer_down(x, y, button))

    @sio.on('host_pointer_move')
    def handle_host_pointer_move(data):
        try: x, y = parse_point(data)
        except ValidationError: return
        _run_host(lambda h: h.pointer_move(x, y))

    @sio.on('host_pointer_up')
    def handle_host_pointer_up(data=None):
        try: x, y = parse_point(data) if data else (None, None)
        except ValidationError: x, y = None, None
        _run_host(lambda h: h.pointer_up(x, y))

    @sio.on('host_wheel')
    def handle_host_wheel(data):
        if not isinstance(data, dict): return
        _run_host(lambda h: h.wheel(data.get('x', 0), data.get('y', 0), data.get('deltaY', 0)))

    @sio.on('host_pan')
    def handle_host_pan(data):
        if not isinstance(data, dict): return
        _run_host(lambda h: h.pan(data.get('dx', 0), data.get('dy', 0)))

    @sio.on('host_zoom')
    def handle_host_zoom(data):
        actions = {'in': lambda h: h.zoom_in(), 'out': lambda h: h.zoom_out(), 'reset': lambda h: h.reset_zoom()}
        action = actions.get(data.get('action') if isinstance(data, dict) else None)
        if action is None: logging.debug("Unknown host_zoom action."); return
        _run_host(action)

    # --- Host mask edits ---

    @sio.on('host_stroke')
    def handle_host_stroke(data):
        if not isinstance(data, dict): return
        try: path = parse_path(data.get('path'))
        except ValidationError as e: logging.debug(f"Ignoring host_stroke: {e}"); return
        _run_host(lambda h: h.paint_stroke(path, data.get('tool'), data.get('brushWidth')))

    @sio.on('host_fill_rect')
    def handle_host_fill_rect(data):
        if not isinstance(data, dict): return
        try: rect = Rect.from_dict(data.get('rect'))
        except ValidationError as e: logging.debug(f"Ignoring host_fill_rect: {e}"); return
        _run_host(lambda h: h.fill_rect(rect, data.get('tool')))

    @sio.on('host_fill_all')
    def handle_host_fill_all(data):
        if not isinstance(data, dict): return
        _run_host(lambda h: h.fill_all(data.get('tool')))

    # --- Host observer-view control ---

    @sio.on('host_fit_selection')
    def handle_host_fit_selection(data):
        if not isinstance(data, dict): return
        try: rect = Rect.from_dict(data.get('rect'))
        except ValidationError as e: logging.debug(f"Ignoring host_fit_selection: {e}"); return
        _run_host(lambda h: h.fit_selection(rect))

    @sio.on('host_reset_observer_view')
    def handle_host_reset_observer_view(data=None):
        _run_host(lambda h: h.reset_observer_view())

    @sio.on('host_sync_observer_view')
    def handle_host_sync_observer_view(data=None):
        _run_host(lambda h: h.sync_observer_view())

    @sio.on('host_font_size')
    def handle_host_font_size(data):
        if not isinstance(data, dict): return
        _run_host(lambda h: h.set_label_font_size(data.get('size')))

    @sio.on('host_view_map')
    def handle_host_view_map(data):
        if not isinstance(data, dict) or not data.get('mapId'): return
        _run_host(lambda h: h.view_map(data['mapId']))

    @sio.on('host_set_active_map')
    def handle_host_set_active_map(data):
        if not isinstance(data, dict) or not data.get('mapId'): return
        _run_host(lambda h: h.set_active_map(data['mapId']))

    # --- Relays (turn order, reference overlays) ---

    def _register_relay(event):
        def handle_relay(data):
            if not isinstance(data, dict): logging.warning(f"Invalid {event} payload."); return
            _run_host(lambda h: h.session.relay(event, data, origin_sid=h.sid))
        handle_relay.__name__ = f"handle_relay_{event.replace('-', '_')}"
        sio.on(event)(handle_relay)

    for relay_event in events.RELAY_EVENTS:
        _register_relay(relay_event)
