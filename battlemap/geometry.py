# battlemap/geometry.py
# Selection rectangle and point parsing helpers (image-space coordinates)

import math

from battlemap.errors import ValidationError


class Rect:
    """Axis-aligned rectangle in map-image coordinates."""

    __slots__ = ('x', 'y', 'width', 'height')

    def __init__(self, x, y, width, height):
        self.x = float(x); self.y = float(y); self.width = float(width); self.height = float(height)

    @classmethod
    def from_corners(cls, x0, y0, x1, y1):
        return cls(x0, y0, x1 - x0, y1 - y0).normalized()

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict): raise ValidationError("Rectangle must be an object")
        try:
            values = [float(data[k]) for k in ('x', 'y', 'width', 'height')]
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed rectangle: {data!r}") from e
        if not all(math.isfinite(v) for v in values): raise ValidationError(f"Non-finite rectangle: {data!r}")
        return cls(*values)

    def normalized(self):
        """Flip negative extents produced by dragging up or left."""
        x = min(self.x, self.x + self.width); y = min(self.y, self.y + self.height)
        return Rect(x, y, abs(self.width), abs(self.height))

    @property
    def center(self):
        return (self.x + self.width / 2, self.y + self.height / 2)

    def is_smaller_than(self, min_size):
        return self.width < min_size or self.height < min_size

    def to_dict(self):
        return {'x': self.x, 'y': self.y, 'width': self.width, 'height': self.height}

    def __eq__(self, other):
        return isinstance(other, Rect) and self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"Rect(x={self.x}, y={self.y}, width={self.width}, height={self.height})"


def parse_point(value):
    """Accept {'x':..,'y':..} or [x, y]; return a float tuple."""
    try:
        if isinstance(value, dict): x, y = float(value['x']), float(value['y'])
        elif isinstance(value, (list, tuple)) and len(value) == 2: x, y = float(value[0]), float(value[1])
        else: raise ValidationError(f"Malformed point: {value!r}")
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed point: {value!r}") from e
    if not (math.isfinite(x) and math.isfinite(y)): raise ValidationError(f"Non-finite point: {value!r}")
    return (x, y)


def parse_path(points):
    if not isinstance(points, (list, tuple)): raise ValidationError("Path must be a list of points")
    return [parse_point(p) for p in points]
