# battlemap/replica.py
# Passive observer state: applies broadcast events to a local copy and renders from it

import copy
import logging

from battlemap import config
from battlemap.camera import ObserverView
from battlemap.errors import DecodeError
from battlemap.mask import MaskStore
from battlemap.render import compose_frame
from battlemap.render_cache import RenderCache


class ObserverReplica:
    """What an observer client knows: map records, the active map, the broadcast view
    and a double-buffered fog mask. Observers never change shared state."""

    def __init__(self, codec=None, executor=None, on_redraw=None):
        self.maps = {}
        self.active_map_id = None
        self.observer_view = ObserverView()
        self.turn_order = None
        self.reference_overlay = None
        self.on_redraw = on_redraw
        self.mask_cache = RenderCache(codec=codec, executor=executor, on_swap=self._mask_swapped)
        self._hidden = None
        self._hidden_key = None

    def _redraw(self, reason):
        if self.on_redraw is not None:
            self.on_redraw(reason)

    def _mask_swapped(self, map_id, _image):
        self._redraw(f"mask:{map_id}")

    def _refresh_mask(self, map_id):
        record = self.maps.get(map_id)
        encoded = record.get('maskEncoded') if record else None
        if encoded: return self.mask_cache.receive(encoded, key=map_id)
        self.mask_cache.clear()
        return None

    def load_snapshot(self, snapshot):
        """Replace everything with a full-state snapshot (connect or reconnect)."""
        self.maps = {m['id']: copy.deepcopy(m) for m in snapshot.get('maps', [])}
        self.active_map_id = snapshot.get('activeMapId')
        self.observer_view = ObserverView.from_record(snapshot.get('observerView'))
        logging.info(f"Observer snapshot: {len(self.maps)} map(s), active={self.active_map_id}")
        future = self._refresh_mask(self.active_map_id) if self.active_map_id in self.maps else None
        self._redraw('snapshot')
        return future

    def apply(self, event, payload):
        """Apply one broadcast event. Returns the mask decode future when one was started."""
        handler = getattr(self, '_on_' + event.replace('-', '_'), None)
        if handler is None:
            logging.debug(f"Observer ignoring event {event}")
            return None
        return handler(payload)

    def _on_mask_updated(self, payload):
        map_id = payload.get('mapId'); record = self.maps.get(map_id)
        if record is None: return None
        record['maskEncoded'] = payload.get('encodedMask')
        if 'maskMeta' in payload: record['maskMeta'] = payload['maskMeta']
        if map_id != self.active_map_id: return None
        return self._refresh_mask(map_id)

    def _on_observer_view_updated(self, payload):
        map_id = payload.get('mapId')
        pan = payload.get('pan') or {}
        view = ObserverView(payload.get('zoom') or 1.0, pan.get('x') or 0.0, pan.get('y') or 0.0,
                            payload.get('fontSize') or config.DEFAULT_LABEL_FONT_SIZE)
        if map_id in self.maps: self.maps[map_id]['observerView'] = view.to_record()
        if map_id == self.active_map_id:
            self.observer_view = view
            self._redraw('view')
        return None

    def _on_active_map_changed(self, payload):
        self.active_map_id = payload.get('activeMapId')
        record = self.maps.get(self.active_map_id)
        self.observer_view = ObserverView.from_record(record.get('observerView') if record else None)
        future = self._refresh_mask(self.active_map_id) if record else None
        self._redraw('active-map')
        return future

    def _on_map_created(self, payload):
        record = payload.get('map')
        if isinstance(record, dict) and record.get('id'):
            self.maps[record['id']] = copy.deepcopy(record)
            self._redraw('map-created')
        return None

    def _on_map_updated(self, payload):
        record = payload.get('map'); map_id = payload.get('mapId')
        if not isinstance(record, dict) or not map_id: return None
        old = self.maps.get(map_id)
        self.maps[map_id] = copy.deepcopy(record)
        if map_id != self.active_map_id: return None
        if old is not None and old.get('observerView') != record.get('observerView'):
            self.observer_view = ObserverView.from_record(record.get('observerView'))
        if old is None or old.get('maskEncoded') != record.get('maskEncoded'):
            # Old fog stays on screen until the new one decodes.
            return self._refresh_mask(map_id)
        self._redraw('map-updated')
        return None

    def _on_map_deleted(self, payload):
        map_id = payload.get('mapId')
        self.maps.pop(map_id, None)
        if 'activeMapId' in payload and payload['activeMapId'] != self.active_map_id:
            return self._on_active_map_changed({'activeMapId': payload['activeMapId']})
        if map_id == self.active_map_id:
            self.active_map_id = None
            self.mask_cache.clear()
        self._redraw('map-deleted')
        return None

    def _layers(self, payload):
        record = self.maps.get(payload.get('mapId'))
        if record is None: return None
        return record.setdefault('layers', [])

    def _on_layer_added(self, payload):
        layers = self._layers(payload)
        if layers is not None and isinstance(payload.get('layer'), dict):
            layers.append(copy.deepcopy(payload['layer'])); self._redraw('layers')

    def _on_layer_updated(self, payload):
        layers = self._layers(payload); layer = payload.get('layer')
        if layers is None or not isinstance(layer, dict): return None
        for i, existing in enumerate(layers):
            if existing.get('id') == layer.get('id'):
                layers[i] = copy.deepcopy(layer); self._redraw('layers')
                break
        return None

    def _on_layer_deleted(self, payload):
        record = self.maps.get(payload.get('mapId'))
        if record is not None:
            record['layers'] = [l for l in record.get('layers', []) if l.get('id') != payload.get('layerId')]
            self._redraw('layers')

    def _on_layers_reordered(self, payload):
        record = self.maps.get(payload.get('mapId'))
        if record is None: return None
        by_id = {l.get('id'): l for l in record.get('layers', [])}
        record['layers'] = [by_id[i] for i in payload.get('layerIds', []) if i in by_id]
        self._redraw('layers')
        return None

    def _on_battlegrid_updated(self, payload):
        record = self.maps.get(payload.get('mapId'))
        if record is not None:
            record['battlegridState'] = copy.deepcopy(payload.get('battlegridState') or {})
            self._redraw('battlegrid')

    def _on_turn_order_updated(self, payload):
        self.turn_order = {k: v for k, v in payload.items() if k != 'sessionId'}
        self._redraw('turn-order')

    def _on_reference_overlay_shown(self, payload):
        self.reference_overlay = {'kind': payload.get('kind'), 'entry': payload.get('entry')}
        self._redraw('overlay')

    def _on_reference_overlay_hidden(self, _payload):
        self.reference_overlay = None
        self._redraw('overlay')

    def handle_input(self, *_args, **_kwargs):
        """Observer pointer/keyboard input is inert; the view is host-controlled."""
        logging.debug("Observer input ignored")
        return None

    @property
    def active_map(self):
        return self.maps.get(self.active_map_id)

    def current_mask(self, size=None):
        """Decoded fog of the active map.

        A map whose mask has not decoded yet (or could not be decoded) is
        drawn fully hidden, never unfogged.
        """
        image = self.mask_cache.image_for(self.active_map_id)
        record = self.active_map
        if image is not None or not record or not record.get('maskEncoded'): return image
        size = size or (record.get('width') or 1, record.get('height') or 1)
        key = (self.active_map_id, tuple(size))
        if self._hidden_key != key:
            self._hidden = MaskStore(size[0], size[1], config.FOG_POLICY_HIDDEN).image
            self._hidden_key = key
        return self._hidden

    def render_frame(self, loader, viewport=config.DEFAULT_VIEWPORT):
        """Composite the active map as observers see it (opaque fog, broadcast camera)."""
        record = self.active_map
        background = None
        if record and record.get('backgroundImage'):
            try:
                background = loader.get(record['backgroundImage'])
            except DecodeError as e:
                logging.warning(f"Observer frame: background unavailable for {record['id']}: {e}")
        view = self.observer_view
        mask = self.current_mask(background.size if background is not None else None)
        return compose_frame(background, mask, view.zoom, (view.pan_x, view.pan_y), viewport, config.OBSERVER_FOG_OPACITY)
