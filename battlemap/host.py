# battlemap/host.py
# Host controller: local camera, tools, hot mask stores and gesture coalescing for one host connection

import logging
from functools import wraps

from battlemap import config
from battlemap.camera import Camera, fit_rect, fit_whole_image, sync_from_host, parse_viewport
from battlemap.errors import BattlemapError, DecodeError, OversizeError, StaleReferenceError, ValidationError
from battlemap.geometry import Rect
from battlemap.mask import MaskEditor, MaskStore, TOOL_HIDE, TOOL_REVEAL
from battlemap.render import compose_frame

TOOL_SELECT = 'select'
TOOL_VIEW_RECT = 'view-rect'
TOOL_HIDE_BRUSH = 'hide-brush'
TOOL_REVEAL_BRUSH = 'reveal-brush'
TOOL_HIDE_RECT = 'hide-rect'
TOOL_REVEAL_RECT = 'reveal-rect'
HOST_TOOLS = (TOOL_SELECT, TOOL_VIEW_RECT, TOOL_HIDE_BRUSH, TOOL_REVEAL_BRUSH, TOOL_HIDE_RECT, TOOL_REVEAL_RECT)

BRUSH_TOOLS = {TOOL_HIDE_BRUSH: TOOL_HIDE, TOOL_REVEAL_BRUSH: TOOL_REVEAL}
RECT_TOOLS = {TOOL_HIDE_RECT: TOOL_HIDE, TOOL_REVEAL_RECT: TOOL_REVEAL}

MIDDLE_BUTTON = 1


def logged_errors(func):
    """Editor-level failures degrade to 'nothing happened' plus a log line."""
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except ValidationError as e:
            logging.debug(f"Host {self.sid}: ignored {func.__name__}: {e}")
        except StaleReferenceError as e:
            logging.info(f"Host {self.sid}: {func.__name__} on a stale reference: {e}")
        except OversizeError as e:
            logging.error(f"Host {self.sid}: mask not saved, {e} ({e.byte_length} bytes)")
        except DecodeError as e:
            logging.warning(f"Host {self.sid}: {func.__name__} could not decode: {e}")
        except BattlemapError as e:
            logging.error(f"Host {self.sid}: {func.__name__} failed: {e}")
        return None
    return wrapper


class Gesture:
    """One pointer-down..pointer-up interaction."""

    def __init__(self, kind, tool, screen_point, image_point):
        self.kind = kind
        self.tool = tool
        self.last_screen = screen_point
        self.points = [image_point]

    @property
    def start(self):
        return self.points[0]


class HostController:
    """Everything a single host connection does to the shared session.

    The camera and the hot mask stores are private to this host. Pointer
    moves only redraw locally; the mask is encoded and broadcast once, when
    the gesture ends.
    """

    def __init__(self, session, sid, viewport=config.DEFAULT_VIEWPORT, on_redraw=None):
        self.session = session
        self.sid = sid
        self.viewport = parse_viewport(viewport)
        self.camera = Camera()
        self.tool = TOOL_SELECT
        self.brush_width = config.DEFAULT_BRUSH_WIDTH
        self.viewing_map_id = session.active_map_id
        self.on_redraw = on_redraw
        self.gesture = None
        self._masks = {}

    def _redraw(self, reason):
        if self.on_redraw is not None:
            self.on_redraw(reason)

    # --- Settings ---

    @logged_errors
    def set_viewport(self, width, height):
        self.viewport = parse_viewport((width, height))
        return self.viewport

    @logged_errors
    def set_tool(self, tool, brush_width=None):
        if tool not in HOST_TOOLS: raise ValidationError(f"Unknown tool {tool!r}")
        if brush_width is not None:
            try: width = float(brush_width)
            except (TypeError, ValueError) as e: raise ValidationError(f"Bad brush width {brush_width!r}") from e
            if width <= 0: raise ValidationError(f"Bad brush width {brush_width!r}")
            self.brush_width = width
        self.tool = tool; self.gesture = None
        return tool

    # --- Hot mask stores ---

    def mask_store(self, map_id=None):
        """The host-local mask for a map, created from the persisted mask on first use."""
        map_id = map_id or self.viewing_map_id
        store = self._masks.get(map_id)
        if store is not None: return store
        record = self.session.require_map(map_id)
        width, height = self.session.background_size(map_id)
        store = MaskStore(width, height, self.session.fog_policy)
        if record.get('maskEncoded'):
            try:
                store.load(self.session.codec.decode_async(record['maskEncoded']).result())
            except DecodeError as e:
                logging.warning(f"Host {self.sid}: stored mask for {map_id} unreadable, starting from fog policy: {e}")
        self._masks[map_id] = store
        return store

    def discard_mask(self, map_id):
        self._masks.pop(map_id, None)

    def map_deleted(self, map_id):
        if self.viewing_map_id == map_id:
            self.viewing_map_id = self.session.active_map_id
            self.gesture = None

    def _require_viewing(self):
        if self.viewing_map_id is None: raise StaleReferenceError("Host is not viewing any map")
        return self.session.require_map(self.viewing_map_id)

    def _require_active(self):
        if self.session.active_map_id is None: raise StaleReferenceError("Session has no active map")
        return self.session.require_map(self.session.active_map_id)

    def commit_mask(self, map_id=None):
        """Encode the hot mask and save it. Raises OversizeError, leaving the stored mask as it was."""
        map_id = map_id or self.viewing_map_id
        encoded = self.session.codec.encode(self.mask_store(map_id).image)
        self.session.save_mask(map_id, encoded, origin_sid=self.sid)
        return encoded

    # --- Pointer gestures (screen coordinates) ---

    @logged_errors
    def pointer_down(self, sx, sy, button=0):
        image_point = self.camera.screen_to_image(sx, sy)
        if button == MIDDLE_BUTTON or self.tool == TOOL_SELECT:
            self.gesture = Gesture('pan', None, (sx, sy), image_point)
        elif self.tool in BRUSH_TOOLS:
            self._require_viewing()
            self.gesture = Gesture('stroke', BRUSH_TOOLS[self.tool], (sx, sy), image_point)
        elif self.tool in RECT_TOOLS:
            self._require_viewing()
            self.gesture = Gesture('rect', RECT_TOOLS[self.tool], (sx, sy), image_point)
        else:
            self.gesture = Gesture('view-rect', None, (sx, sy), image_point)
        return self.gesture.kind

    @logged_errors
    def pointer_move(self, sx, sy):
        gesture = self.gesture
        if gesture is None: return None
        if gesture.kind == 'pan':
            self.camera.pan_by(sx - gesture.last_screen[0], sy - gesture.last_screen[1])
        else:
            point = self.camera.screen_to_image(sx, sy)
            if gesture.kind == 'stroke':
                MaskEditor(self.mask_store()).paint_stroke([gesture.points[-1], point], gesture.tool, self.brush_width)
                gesture.points.append(point)
            else:
                gesture.points[1:] = [point]
        gesture.last_screen = (sx, sy)
        self._redraw(gesture.kind)
        return gesture.kind

    @logged_errors
    def pointer_up(self, sx=None, sy=None):
        gesture, self.gesture = self.gesture, None
        if gesture is None: return None
        if sx is not None and sy is not None and gesture.kind != 'pan':
            point = self.camera.screen_to_image(sx, sy)
            if gesture.kind == 'stroke' and point != gesture.points[-1]:
                MaskEditor(self.mask_store()).paint_stroke([gesture.points[-1], point], gesture.tool, self.brush_width)
                gesture.points.append(point)
            elif gesture.kind != 'stroke':
                gesture.points[1:] = [point]
        if gesture.kind == 'pan': return 'pan'
        if gesture.kind == 'stroke':
            if len(gesture.points) < 2: raise ValidationError("Click without drag, nothing painted")
            self.commit_mask()
            return 'stroke'
        if len(gesture.points) < 2: raise ValidationError("Selection without drag")
        rect = Rect.from_corners(gesture.start[0], gesture.start[1], gesture.points[-1][0], gesture.points[-1][1])
        if gesture.kind == 'rect':
            MaskEditor(self.mask_store()).fill_rect(rect, gesture.tool)
            self.commit_mask()
            return 'rect'
        if rect.is_smaller_than(config.MASK_MIN_RECT_SIZE): raise ValidationError(f"Selection too small: {rect!r}")
        self._fit_selection(rect)
        return 'view-rect'

    # --- Camera ---

    @logged_errors
    def pan(self, dx, dy):
        self.camera.pan_by(float(dx), float(dy)); self._redraw('pan')
        return self.camera

    @logged_errors
    def wheel(self, sx, sy, delta_y):
        self.camera.wheel(float(sx), float(sy), float(delta_y)); self._redraw('zoom')
        return self.camera

    def zoom_in(self):
        self.camera.zoom_in(); self._redraw('zoom')
        return self.camera

    def zoom_out(self):
        self.camera.zoom_out(); self._redraw('zoom')
        return self.camera

    def reset_zoom(self):
        self.camera.reset(); self._redraw('zoom')
        return self.camera

    # --- Mask tools ---

    @logged_errors
    def fill_all(self, tool):
        """Show-all / fog-all on the viewing map, sized to the background as it is now."""
        self._require_viewing()
        width, height = self.session.background_size(self.viewing_map_id)
        MaskEditor(self.mask_store()).fill_all(tool, width, height)
        self._redraw('fill')
        return self.commit_mask()

    @logged_errors
    def paint_stroke(self, path, tool, brush_width=None):
        """Apply a whole image-space stroke at once (one gesture, one save)."""
        self._require_viewing()
        MaskEditor(self.mask_store()).paint_stroke(path, tool, brush_width or self.brush_width)
        return self.commit_mask()

    @logged_errors
    def fill_rect(self, rect, tool):
        self._require_viewing()
        MaskEditor(self.mask_store()).fill_rect(rect, tool)
        return self.commit_mask()

    # --- Observer view ---

    def observer_viewport(self):
        return self.session.observer_viewport() or self.viewport

    def _write_view(self, zoom, pan, label_font_size=None):
        map_id = self._require_active()['id']
        view = self.session.observer_view(map_id)
        view.zoom = zoom; view.pan_x, view.pan_y = pan
        if label_font_size is not None: view.label_font_size = label_font_size
        return self.session.set_observer_view(map_id, view, origin_sid=self.sid)

    def _fit_selection(self, rect):
        zoom, pan = fit_rect(rect, self.observer_viewport())
        logging.info(f"Host {self.sid}: fitting observers to {rect!r} -> zoom {zoom:.3f}")
        return self._write_view(zoom, pan)

    @logged_errors
    def fit_selection(self, rect):
        return self._fit_selection(rect)

    @logged_errors
    def reset_observer_view(self):
        image_size = self.session.background_size(self._require_active()['id'])
        zoom, pan = fit_whole_image(image_size, self.observer_viewport())
        return self._write_view(zoom, pan)

    @logged_errors
    def sync_observer_view(self):
        image_size = self.session.background_size(self._require_active()['id'])
        zoom, pan = sync_from_host(self.camera, self.viewport, image_size, self.session.observer_viewport())
        return self._write_view(zoom, pan)

    @logged_errors
    def set_label_font_size(self, size):
        try: size = int(size)
        except (TypeError, ValueError) as e: raise ValidationError(f"Bad font size {size!r}") from e
        size = max(config.MIN_LABEL_FONT_SIZE, min(config.MAX_LABEL_FONT_SIZE, size))
        view = self.session.observer_view(self._require_active()['id'])
        return self._write_view(view.zoom, (view.pan_x, view.pan_y), size)

    # --- Maps ---

    @logged_errors
    def view_map(self, map_id):
        """Switch the host-only viewing map and fit it to the host viewport."""
        self.session.require_map(map_id)
        self.viewing_map_id = map_id; self.gesture = None
        zoom, pan = fit_whole_image(self.session.background_size(map_id), self.viewport)
        self.camera.zoom = zoom; self.camera.pan_x, self.camera.pan_y = pan
        self._redraw('map')
        return map_id

    @logged_errors
    def set_active_map(self, map_id):
        """Show a map to observers, keeping the view they currently have."""
        carry = None
        if self.session.active_map_id in self.session.maps:
            carry = self.session.observer_view(self.session.active_map_id)
        return self.session.set_active_map(map_id, view=carry, origin_sid=self.sid)

    def render_frame(self):
        """The host's own preview: hot mask at reduced opacity under the local camera."""
        record = self.session.maps.get(self.viewing_map_id)
        background = None; mask = None
        if record is not None:
            if record.get('backgroundImage'):
                try: background = self.session.loader.get(record['backgroundImage'])
                except DecodeError as e: logging.warning(f"Host {self.sid}: background unavailable: {e}")
            try: mask = self.mask_store().image
            except BattlemapError as e: logging.warning(f"Host {self.sid}: no mask to draw: {e}")
        return compose_frame(background, mask, self.camera.zoom, (self.camera.pan_x, self.camera.pan_y), self.viewport, config.HOST_FOG_OPACITY)
