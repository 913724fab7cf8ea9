# battlemap/camera.py
# Camera transform (zoom + pan in screen pixels), observer view record, view-fit solver
#
# screen = image * zoom + pan ; image = (screen - pan) / zoom

import math

from battlemap import config
from battlemap.errors import ValidationError


def clamp_zoom(zoom):
    return max(config.MIN_ZOOM, min(config.MAX_ZOOM, zoom))


def parse_viewport(viewport):
    try: width, height = float(viewport[0]), float(viewport[1])
    except (TypeError, ValueError, IndexError) as e: raise ValidationError(f"Bad viewport: {viewport!r}") from e
    if not (math.isfinite(width) and math.isfinite(height)) or width <= 0 or height <= 0:
        raise ValidationError(f"Bad viewport: {viewport!r}")
    return width, height


class Camera:
    """Zoom/pan state of one client, relative to that client's viewport."""

    def __init__(self, zoom=1.0, pan_x=0.0, pan_y=0.0):
        self.zoom = clamp_zoom(float(zoom))
        self.pan_x = float(pan_x)
        self.pan_y = float(pan_y)

    def screen_to_image(self, sx, sy):
        return ((sx - self.pan_x) / self.zoom, (sy - self.pan_y) / self.zoom)

    def image_to_screen(self, ix, iy):
        return (ix * self.zoom + self.pan_x, iy * self.zoom + self.pan_y)

    def pan_by(self, dx, dy):
        self.pan_x += dx
        self.pan_y += dy

    def zoom_at(self, cursor_x, cursor_y, factor):
        """Scale zoom by factor keeping the image point under the cursor fixed."""
        new_zoom = clamp_zoom(self.zoom * factor)
        ratio = new_zoom / self.zoom
        self.pan_x = cursor_x - (cursor_x - self.pan_x) * ratio
        self.pan_y = cursor_y - (cursor_y - self.pan_y) * ratio
        self.zoom = new_zoom

    def wheel(self, cursor_x, cursor_y, delta_y):
        self.zoom_at(cursor_x, cursor_y, config.WHEEL_ZOOM_OUT if delta_y > 0 else config.WHEEL_ZOOM_IN)

    def zoom_in(self):
        self.zoom = min(config.MAX_ZOOM, self.zoom * 1.2)

    def zoom_out(self):
        self.zoom = max(config.MIN_ZOOM, self.zoom / 1.2)

    def reset(self):
        self.zoom = 1.0; self.pan_x = 0.0; self.pan_y = 0.0

    def visible_center(self, viewport):
        """Image-space point at the middle of the viewport."""
        width, height = parse_viewport(viewport)
        return visible_center(self.zoom, (self.pan_x, self.pan_y), (width, height))

    def __repr__(self):
        return f"Camera(zoom={self.zoom:.4f}, pan=({self.pan_x:.1f}, {self.pan_y:.1f}))"


class ObserverView:
    """The camera broadcast to observers, persisted on the map record."""

    def __init__(self, zoom=1.0, pan_x=0.0, pan_y=0.0, label_font_size=config.DEFAULT_LABEL_FONT_SIZE):
        self.zoom = float(zoom)
        self.pan_x = float(pan_x)
        self.pan_y = float(pan_y)
        self.label_font_size = int(label_font_size)

    @classmethod
    def from_record(cls, data):
        data = data or {}
        return cls(data.get('zoom') or 1.0, data.get('panX') or 0.0, data.get('panY') or 0.0,
                   data.get('labelFontSize') or config.DEFAULT_LABEL_FONT_SIZE)

    def to_record(self):
        return {'zoom': self.zoom, 'panX': self.pan_x, 'panY': self.pan_y, 'labelFontSize': self.label_font_size}

    def to_event(self, map_id):
        return {'mapId': map_id, 'zoom': self.zoom, 'pan': {'x': self.pan_x, 'y': self.pan_y}, 'fontSize': self.label_font_size}

    def camera(self):
        cam = Camera(); cam.zoom = self.zoom; cam.pan_x = self.pan_x; cam.pan_y = self.pan_y
        return cam

    def __eq__(self, other):
        return isinstance(other, ObserverView) and self.to_record() == other.to_record()

    def __repr__(self):
        return f"ObserverView({self.to_record()})"


# --- View-fit solver (pure functions) ---

def pan_for_center(center, zoom, viewport):
    """Pan that puts the image point `center` at the middle of the viewport."""
    width, height = parse_viewport(viewport)
    return (width / 2 - center[0] * zoom, height / 2 - center[1] * zoom)


def visible_center(zoom, pan, viewport):
    width, height = parse_viewport(viewport)
    return ((width / 2 - pan[0]) / zoom, (height / 2 - pan[1]) / zoom)


def fit_rect(rect, viewport):
    """Largest zoom showing all of rect, centred. Returns (zoom, (pan_x, pan_y))."""
    rect = rect.normalized()
    if rect.width <= 0 or rect.height <= 0: raise ValidationError(f"Cannot fit empty rectangle {rect!r}")
    width, height = parse_viewport(viewport)
    zoom = min(width / rect.width, height / rect.height)
    return zoom, pan_for_center(rect.center, zoom, (width, height))


def fit_whole_image(image_size, viewport):
    """Fit the full image with 90% padding, never zooming in past 100%."""
    image_w, image_h = parse_viewport(image_size)
    width, height = parse_viewport(viewport)
    zoom = min(width * config.FIT_IMAGE_PADDING / image_w, height * config.FIT_IMAGE_PADDING / image_h, 1.0)
    return zoom, pan_for_center((image_w / 2, image_h / 2), zoom, (width, height))


def sync_from_host(host_camera, host_viewport, image_size, observer_viewport=None):
    """Observers see what the host sees: host visible centre (clamped to the image) at host zoom."""
    image_w, image_h = parse_viewport(image_size)
    cx, cy = host_camera.visible_center(host_viewport)
    cx = max(0.0, min(image_w, cx)); cy = max(0.0, min(image_h, cy))
    zoom = host_camera.zoom
    return zoom, pan_for_center((cx, cy), zoom, observer_viewport or host_viewport)
