# battlemap/session.py
# Session aggregate (maps, active map, hosts) and the manager that owns one per session id

import copy
import time
import logging
import threading
from uuid import uuid4

from flask import current_app

from battlemap import config
from battlemap import broadcaster as events
from battlemap.camera import ObserverView
from battlemap.codec import MaskCodec
from battlemap.errors import DecodeError, OversizeError, PersistingError, StaleReferenceError, ValidationError
from battlemap.host import HostController
from battlemap.mask import MaskStore
from battlemap.replica import ObserverReplica

GRID_TYPES = ('none', 'square', 'hex')
DEFAULT_MAP_SIZE = (800, 600)
# Map keys only the mask and view operations may write.
PROTECTED_MAP_KEYS = ('id', 'maskEncoded', 'maskMeta', 'observerView', 'battlegridState', 'layers')


def default_battlegrid():
    return {
        'type': 'none', 'lineWidth': 2, 'opacity': 0.5, 'size': 50,
        'offsetX': 0, 'offsetY': 0, 'color': '#ffffff', 'scaleFactor': 1.5,
    }


def normalize_battlegrid(current, updates):
    """Merge a partial battlegrid update into `current`. Raises ValidationError."""
    if not isinstance(updates, dict): raise ValidationError("Battlegrid state must be an object")
    merged = dict(default_battlegrid()); merged.update(current or {})
    for key, value in updates.items():
        if key not in merged: continue
        if key == 'type':
            if value not in GRID_TYPES: raise ValidationError(f"Unknown grid type {value!r}")
        elif key == 'color':
            if not isinstance(value, str): raise ValidationError("Grid color must be a string")
        else:
            try: value = float(value)
            except (TypeError, ValueError) as e: raise ValidationError(f"Bad grid {key}: {value!r}") from e
            if key in ('lineWidth', 'size') and value <= 0: raise ValidationError(f"Grid {key} must be positive")
            if key == 'opacity' and not 0.0 <= value <= 1.0: raise ValidationError("Grid opacity must be within 0..1")
        merged[key] = value
    return merged


def _new_id(prefix):
    return f"{prefix}_{int(time.time()*1000)}_{uuid4().hex[:5]}"


class Session:
    """All shared state of one session. Mutations persist first, then broadcast.

    Callers hold `lock` around a handler so one mutation runs to completion
    before the next starts.
    """

    def __init__(self, session_id, store, broadcaster, loader, codec=None, fog_policy=None):
        self.id = session_id
        self.store = store
        self.broadcaster = broadcaster
        self.loader = loader
        self.codec = codec or MaskCodec()
        self.fog_policy = fog_policy or config.DEFAULT_FOG_POLICY
        self.maps = {}
        self.active_map_id = None
        self.hosts = {}
        self.observer_viewports = {}
        self.last_observer_viewport = None
        self.lock = threading.RLock()
        self.replica = ObserverReplica(codec=self.codec)

    # --- Loading / snapshot ---

    def load(self):
        self.store.ensure_session(self.id)
        data = self.store.load_session(self.id) or {}
        self.maps = {m['id']: m for m in data.get('maps', [])}
        self.active_map_id = data.get('active_map_id')
        if self.active_map_id not in self.maps: self.active_map_id = None
        logging.info(f"Session {self.id}: loaded {len(self.maps)} map(s), active map {self.active_map_id}")
        self.replica.load_snapshot(self.snapshot())
        self.broadcaster.subscribe(self.id, self.replica.apply)
        return self

    def snapshot(self):
        """Full state for a (re)connecting client."""
        active = self.maps.get(self.active_map_id)
        view = ObserverView.from_record(active.get('observerView') if active else None)
        return {
            'sessionId': self.id,
            'maps': [copy.deepcopy(m) for m in self.maps.values()],
            'activeMapId': self.active_map_id,
            'observerView': view.to_record(),
        }

    def require_map(self, map_id):
        record = self.maps.get(map_id)
        if record is None: raise StaleReferenceError(f"Map {map_id} no longer exists in session {self.id}")
        return record

    def background_size(self, map_id):
        """Natural background size as known now, falling back to the stored width/height."""
        record = self.require_map(map_id)
        url = record.get('backgroundImage')
        if url:
            try:
                return self.loader.natural_size(url)
            except DecodeError as e:
                logging.warning(f"Background of map {map_id} unavailable, using stored size: {e}")
        return (int(record.get('width') or DEFAULT_MAP_SIZE[0]), int(record.get('height') or DEFAULT_MAP_SIZE[1]))

    def observer_viewport(self):
        return self.last_observer_viewport

    def report_observer_viewport(self, sid, viewport):
        self.observer_viewports[sid] = viewport
        self.last_observer_viewport = viewport

    def forget_client(self, sid):
        self.observer_viewports.pop(sid, None)
        return self.hosts.pop(sid, None)

    # --- Internals ---

    def _persist(self, record):
        if not self.store.save_map(self.id, record):
            raise PersistingError(f"Could not save map {record['id']}")
        self.maps[record['id']] = record

    def _publish(self, event, payload, origin_sid=None):
        return self.broadcaster.publish(self.id, event, payload, skip_sid=origin_sid)

    def _initial_mask(self, width, height):
        """Encode a fresh mask following the fog policy. Returns (data URI, meta) or (None, None)."""
        try:
            encoded = self.codec.encode(MaskStore(width, height, self.fog_policy).image)
        except OversizeError as e:
            logging.error(f"Initial mask for {width}x{height} too large, map starts without fog: {e}")
            return None, None
        return encoded.data_uri, encoded.meta()

    def _dimensions(self, background_image, width=None, height=None):
        """Mask size: the background's natural size whenever it can be read."""
        requested = None
        if width and height:
            try: requested = (int(width), int(height))
            except (TypeError, ValueError) as e: raise ValidationError(f"Bad map size {width}x{height}") from e
            if requested[0] <= 0 or requested[1] <= 0: raise ValidationError(f"Bad map size {width}x{height}")
        if background_image:
            try:
                size = self.loader.natural_size(background_image)
            except DecodeError as e:
                logging.warning(f"Could not read background size for {background_image}: {e}")
            else:
                if requested and requested != size:
                    logging.warning(f"Ignoring size {requested[0]}x{requested[1]} for {background_image}, image is {size[0]}x{size[1]}")
                return size
        return requested or DEFAULT_MAP_SIZE

    def _release_background(self, url):
        """Drop a cached background no map in this session still shows."""
        if url and not any(m.get('backgroundImage') == url for m in self.maps.values()):
            self.loader.invalidate(url)

    def _reset_host_masks(self, map_id):
        for host in self.hosts.values(): host.discard_mask(map_id)

    # --- Maps ---

    def create_map(self, name, background_image=None, width=None, height=None, origin_sid=None):
        if not isinstance(name, str) or not name.strip(): raise ValidationError("Map name is required")
        width, height = self._dimensions(background_image, width, height)
        mask_encoded, mask_meta = self._initial_mask(width, height)
        record = {
            'id': _new_id('map'),
            'name': name.strip(),
            'backgroundImage': background_image,
            'width': width,
            'height': height,
            'layers': [],
            'maskEncoded': mask_encoded,
            'maskMeta': mask_meta,
            'observerView': ObserverView().to_record(),
            'battlegridState': default_battlegrid(),
        }
        self._persist(record)
        logging.info(f"Session {self.id}: created map {record['id']} '{record['name']}' ({width}x{height})")
        self._publish(events.MAP_CREATED, {'mapId': record['id'], 'map': copy.deepcopy(record)}, origin_sid)
        if self.active_map_id is None: self.set_active_map(record['id'], origin_sid=origin_sid)
        return record

    def update_map(self, map_id, updates, origin_sid=None):
        """Shallow merge. A new background re-initializes the mask to the new size."""
        if not isinstance(updates, dict): raise ValidationError("Map updates must be an object")
        record = copy.deepcopy(self.require_map(map_id))
        old_background = record.get('backgroundImage')
        updates = {k: v for k, v in updates.items() if k not in PROTECTED_MAP_KEYS}
        background_changed = any(k in updates and updates[k] != record.get(k) for k in ('backgroundImage', 'width', 'height'))
        record.update(updates)
        if background_changed:
            record['width'], record['height'] = self._dimensions(record.get('backgroundImage'), updates.get('width'), updates.get('height'))
            record['maskEncoded'], record['maskMeta'] = self._initial_mask(record['width'], record['height'])
        self._persist(record)
        if background_changed: self._reset_host_masks(map_id)
        if old_background != record.get('backgroundImage'): self._release_background(old_background)
        self._publish(events.MAP_UPDATED, {'mapId': map_id, 'map': copy.deepcopy(record)}, origin_sid)
        return record

    def delete_map(self, map_id, origin_sid=None):
        background = self.require_map(map_id).get('backgroundImage')
        if not self.store.delete_map(self.id, map_id):
            raise PersistingError(f"Could not delete map {map_id}")
        del self.maps[map_id]
        self._release_background(background)
        if self.active_map_id == map_id:
            self.active_map_id = next(iter(self.maps), None)
            self.store.set_active_map(self.id, self.active_map_id)
        self._reset_host_masks(map_id)
        for host in self.hosts.values(): host.map_deleted(map_id)
        logging.info(f"Session {self.id}: deleted map {map_id}, active map now {self.active_map_id}")
        self._publish(events.MAP_DELETED, {'mapId': map_id, 'activeMapId': self.active_map_id}, origin_sid)
        return self.active_map_id

    def set_active_map(self, map_id, view=None, origin_sid=None):
        """Make a map observer-visible, optionally carrying the current observer view over to it."""
        record = self.require_map(map_id)
        if view is not None:
            record = copy.deepcopy(record)
            record['observerView'] = view.to_record()
            self._persist(record)
        if not self.store.set_active_map(self.id, map_id):
            raise PersistingError(f"Could not set active map {map_id}")
        self.active_map_id = map_id
        self._publish(events.ACTIVE_MAP_CHANGED, {'activeMapId': map_id}, origin_sid)
        current = ObserverView.from_record(record.get('observerView'))
        self._publish(events.OBSERVER_VIEW_UPDATED, current.to_event(map_id), origin_sid)
        return record

    # --- Mask and view ---

    def save_mask(self, map_id, encoded, origin_sid=None):
        """Persist an EncodedMask and broadcast it in full."""
        record = copy.deepcopy(self.require_map(map_id))
        record['maskEncoded'] = encoded.data_uri
        record['maskMeta'] = encoded.meta()
        self._persist(record)
        logging.info(f"Session {self.id}: saved mask for {map_id} ({encoded.label}, {encoded.byte_length} bytes)")
        self._publish(events.MASK_UPDATED, {'mapId': map_id, 'encodedMask': encoded.data_uri, 'maskMeta': encoded.meta()}, origin_sid)
        return record

    def observer_view(self, map_id):
        return ObserverView.from_record(self.require_map(map_id).get('observerView'))

    def set_observer_view(self, map_id, view, origin_sid=None):
        record = copy.deepcopy(self.require_map(map_id))
        record['observerView'] = view.to_record()
        self._persist(record)
        logging.debug(f"Session {self.id}: observer view for {map_id} -> {view!r}")
        self._publish(events.OBSERVER_VIEW_UPDATED, view.to_event(map_id), origin_sid)
        return view

    def set_battlegrid(self, map_id, updates, origin_sid=None):
        record = copy.deepcopy(self.require_map(map_id))
        record['battlegridState'] = normalize_battlegrid(record.get('battlegridState'), updates)
        self._persist(record)
        self._publish(events.BATTLEGRID_UPDATED, {'mapId': map_id, 'battlegridState': copy.deepcopy(record['battlegridState'])}, origin_sid)
        return record['battlegridState']

    # --- Layers ---

    def _require_layer(self, record, layer_id):
        for index, layer in enumerate(record.get('layers', [])):
            if layer.get('id') == layer_id: return index
        raise StaleReferenceError(f"Layer {layer_id} no longer exists on map {record['id']}")

    def add_layer(self, map_id, layer, origin_sid=None):
        if not isinstance(layer, dict): raise ValidationError("Layer must be an object")
        record = copy.deepcopy(self.require_map(map_id))
        layer = copy.deepcopy(layer)
        layer['id'] = layer.get('id') or _new_id('layer')
        if any(l.get('id') == layer['id'] for l in record['layers']): raise ValidationError(f"Duplicate layer id {layer['id']}")
        layer.setdefault('visible', True)
        record['layers'].append(layer)
        self._persist(record)
        self._publish(events.LAYER_ADDED, {'mapId': map_id, 'layer': copy.deepcopy(layer)}, origin_sid)
        return layer

    def update_layer(self, map_id, layer_id, updates, origin_sid=None):
        if not isinstance(updates, dict): raise ValidationError("Layer updates must be an object")
        record = copy.deepcopy(self.require_map(map_id))
        index = self._require_layer(record, layer_id)
        layer = record['layers'][index]
        layer.update({k: v for k, v in updates.items() if k != 'id'})
        self._persist(record)
        self._publish(events.LAYER_UPDATED, {'mapId': map_id, 'layer': copy.deepcopy(layer)}, origin_sid)
        return layer

    def delete_layer(self, map_id, layer_id, origin_sid=None):
        record = copy.deepcopy(self.require_map(map_id))
        del record['layers'][self._require_layer(record, layer_id)]
        self._persist(record)
        self._publish(events.LAYER_DELETED, {'mapId': map_id, 'layerId': layer_id}, origin_sid)

    def reorder_layers(self, map_id, layer_ids, origin_sid=None):
        record = copy.deepcopy(self.require_map(map_id))
        current = [l.get('id') for l in record['layers']]
        if not isinstance(layer_ids, list) or sorted(layer_ids, key=str) != sorted(current, key=str):
            raise ValidationError(f"Layer order must list exactly the existing layers of {map_id}")
        by_id = {l['id']: l for l in record['layers']}
        record['layers'] = [by_id[i] for i in layer_ids]
        self._persist(record)
        self._publish(events.LAYERS_REORDERED, {'mapId': map_id, 'layerIds': list(layer_ids)}, origin_sid)
        return record['layers']

    # --- Relays ---

    def relay(self, event, payload, origin_sid=None):
        """Forward a non-persisted event (turn order, reference overlays)."""
        if event not in events.RELAY_EVENTS: raise ValidationError(f"Event {event!r} cannot be relayed")
        if not isinstance(payload, dict): raise ValidationError("Relay payload must be an object")
        return self._publish(event, payload, origin_sid)


class SessionManager:
    """Owns one Session per session id and remembers which session each socket joined."""

    def __init__(self, store, broadcaster, loader, codec=None, fog_policy=None):
        self.store = store
        self.broadcaster = broadcaster
        self.loader = loader
        self.codec = codec or MaskCodec()
        self.fog_policy = fog_policy
        self._sessions = {}
        self._clients = {}
        self._lock = threading.Lock()

    def get(self, session_id):
        if not config.valid_session_id(session_id): raise ValidationError(f"Invalid session id {session_id!r}")
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = Session(session_id, self.store, self.broadcaster, self.loader, self.codec, self.fog_policy).load()
                self._sessions[session_id] = session
            return session

    def join(self, session_id, sid):
        session = self.get(session_id)
        with self._lock: self._clients[sid] = session_id
        return session

    def session_for(self, sid):
        with self._lock: session_id = self._clients.get(sid)
        return self.get(session_id) if session_id else None

    def attach_host(self, session_id, sid, viewport=None):
        session = self.join(session_id, sid)
        with session.lock:
            host = HostController(session, sid, viewport=viewport or config.DEFAULT_VIEWPORT)
            session.hosts[sid] = host
        logging.info(f"Host {sid} attached to session {session_id}")
        return host

    def host(self, sid):
        session = self.session_for(sid)
        return session.hosts.get(sid) if session else None

    def disconnect(self, sid):
        with self._lock: session_id = self._clients.pop(sid, None)
        if not session_id: return None
        session = self._sessions.get(session_id)
        if session is not None:
            with session.lock: session.forget_client(sid)
        logging.info(f"Client {sid} left session {session_id}")
        return session_id


def get_manager():
    return current_app.extensions['battlemap_sessions']
