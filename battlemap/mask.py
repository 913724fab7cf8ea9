# battlemap/mask.py
# Fog-of-war mask store (RGBA bitmap) and the brush / rectangle editor

import math
import logging

from PIL import Image, ImageDraw

from battlemap import config
from battlemap.errors import ValidationError

TOOL_HIDE = 'hide'
TOOL_REVEAL = 'reveal'
TOOLS = (TOOL_HIDE, TOOL_REVEAL)

# Hidden pixels are opaque black, revealed pixels fully transparent.
HIDDEN = (0, 0, 0, 255)
REVEALED = (0, 0, 0, 0)


def _ink(tool):
    if tool == TOOL_HIDE: return HIDDEN
    if tool == TOOL_REVEAL: return REVEALED
    raise ValidationError(f"Unknown mask tool: {tool!r}")


def _policy_fill(policy):
    return HIDDEN if policy == config.FOG_POLICY_HIDDEN else REVEALED


class MaskStore:
    """In-memory W x H mask sized to the map background."""

    def __init__(self, width, height, policy=None):
        self.policy = policy or config.DEFAULT_FOG_POLICY
        self.image = Image.new('RGBA', self._checked_size(width, height), _policy_fill(self.policy))

    @staticmethod
    def _checked_size(width, height):
        try: size = (int(width), int(height))
        except (TypeError, ValueError) as e: raise ValidationError(f"Bad mask size {width}x{height}") from e
        if size[0] <= 0 or size[1] <= 0: raise ValidationError(f"Bad mask size {width}x{height}")
        return size

    @classmethod
    def from_image(cls, image, width=None, height=None, policy=None):
        """Build a store from a decoded mask, scaled to (width, height) when given."""
        store = cls(width or image.width, height or image.height, policy)
        store.load(image)
        return store

    @property
    def size(self):
        return self.image.size

    @property
    def width(self):
        return self.image.width

    @property
    def height(self):
        return self.image.height

    def resize(self, width, height):
        """Re-initialize to new background dimensions. No-op when they already match."""
        size = self._checked_size(width, height)
        if size == self.image.size: return False
        logging.info(f"Resizing mask {self.image.size[0]}x{self.image.size[1]} -> {size[0]}x{size[1]} (policy={self.policy})")
        self.image = Image.new('RGBA', size, _policy_fill(self.policy))
        return True

    def fill(self, tool):
        self.image = Image.new('RGBA', self.image.size, _ink(tool))

    def load(self, image):
        """Replace contents with a decoded mask image, scaling it to the store size."""
        rgba = image.convert('RGBA')
        if rgba.size != self.image.size:
            logging.debug(f"Scaling loaded mask {rgba.size} to {self.image.size}")
            rgba = rgba.resize(self.image.size, Image.BILINEAR)
        self.image = rgba

    def snapshot(self):
        return self.image.copy()

    def is_hidden(self, x, y):
        return self.image.getpixel((int(x), int(y)))[3] > 0

    def alpha_extrema(self):
        return self.image.getchannel('A').getextrema()


class MaskEditor:
    """Applies brush strokes and rectangle fills to a MaskStore in image space."""

    def __init__(self, store):
        self.store = store

    def paint_stroke(self, path, tool, brush_width=config.DEFAULT_BRUSH_WIDTH):
        ink = _ink(tool)
        if len(path) < 2: raise ValidationError(f"Stroke needs at least 2 points, got {len(path)}")
        try: width = float(brush_width)
        except (TypeError, ValueError) as e: raise ValidationError(f"Bad brush width: {brush_width!r}") from e
        if not math.isfinite(width) or width <= 0: raise ValidationError(f"Bad brush width: {brush_width!r}")
        draw = ImageDraw.Draw(self.store.image)
        points = [(float(x), float(y)) for x, y in path]
        draw.line(points, fill=ink, width=max(1, int(round(width))), joint='curve')
        # Round caps and joins: a disc at every vertex.
        radius = width / 2
        for x, y in points:
            draw.ellipse([x - radius, y - radius, x + radius, y + radius], fill=ink)
        logging.debug(f"Painted {tool} stroke: {len(points)} points, width {width}")

    def fill_rect(self, rect, tool):
        ink = _ink(tool)
        rect = rect.normalized()
        if rect.is_smaller_than(config.MASK_MIN_RECT_SIZE):
            raise ValidationError(f"Rectangle too small ({rect.width:.1f}x{rect.height:.1f})")
        x0 = math.floor(rect.x); y0 = math.floor(rect.y)
        x1 = math.ceil(rect.x + rect.width) - 1; y1 = math.ceil(rect.y + rect.height) - 1
        ImageDraw.Draw(self.store.image).rectangle([x0, y0, x1, y1], fill=ink)
        logging.debug(f"Filled {tool} rectangle {rect!r}")

    def fill_all(self, tool, width, height):
        """Hide or reveal everything, sized to the background dimensions known now."""
        _ink(tool)
        self.store.resize(width, height)
        self.store.fill(tool)
        logging.debug(f"Filled whole mask ({width}x{height}) with {tool}")
