# battlemap/broadcaster.py
# Session-scoped event bus: Socket.IO room fan-out plus in-process listeners

import logging
import threading

MASK_UPDATED = 'mask-updated'
OBSERVER_VIEW_UPDATED = 'observer-view-updated'
ACTIVE_MAP_CHANGED = 'active-map-changed'
MAP_CREATED = 'map-created'
MAP_UPDATED = 'map-updated'
MAP_DELETED = 'map-deleted'
LAYER_ADDED = 'layer-added'
LAYER_UPDATED = 'layer-updated'
LAYER_DELETED = 'layer-deleted'
LAYERS_REORDERED = 'layers-reordered'
BATTLEGRID_UPDATED = 'battlegrid-updated'
TURN_ORDER_UPDATED = 'turn-order-updated'
REFERENCE_OVERLAY_SHOWN = 'reference-overlay-shown'
REFERENCE_OVERLAY_HIDDEN = 'reference-overlay-hidden'

# Events a host may relay without the server persisting anything.
RELAY_EVENTS = (TURN_ORDER_UPDATED, REFERENCE_OVERLAY_SHOWN, REFERENCE_OVERLAY_HIDDEN)


class Broadcaster:
    """Delivers full-payload events to every client in a session's room except the originator."""

    def __init__(self, socketio=None):
        self.socketio = socketio
        self._listeners = {}
        self._lock = threading.Lock()

    def subscribe(self, session_id, listener):
        """Register an in-process listener(event, payload) for one session."""
        with self._lock:
            self._listeners.setdefault(session_id, []).append(listener)

    def publish(self, session_id, event, payload, skip_sid=None):
        message = dict(payload)
        message['sessionId'] = session_id
        if self.socketio is not None:
            self.socketio.emit(event, message, room=session_id, skip_sid=skip_sid)
        with self._lock:
            listeners = list(self._listeners.get(session_id, []))
        for listener in listeners:
            try:
                listener(event, message)
            except Exception as e:
                logging.error(f"Broadcast listener failed for {event} in session {session_id}: {e}", exc_info=True)
        logging.debug(f"Broadcast {event} to session {session_id} (skip {skip_sid})")
        return message
