# battlemap/render_cache.py
# Double-buffered decoded mask: the displayed image only changes on a successful decode

import logging
import threading

from battlemap.codec import MaskCodec, decode_executor
from battlemap.errors import DecodeError


class RenderCache:
    """Keeps `displayed` (what gets drawn) apart from the decode in flight.

    `receive()` starts a decode and returns its future. When the decode
    succeeds and is still the newest one received, the image is swapped in
    and `on_swap` fires. A failed or superseded decode leaves `displayed`
    untouched, so observers never see the fog vanish mid-transition.
    """

    def __init__(self, codec=None, executor=None, on_swap=None):
        self.codec = codec or MaskCodec()
        self.executor = executor
        self.on_swap = on_swap
        self.displayed = None
        self.displayed_key = None
        self.pending_key = None
        self._generation = 0
        self._lock = threading.Lock()

    def receive(self, encoded, key=None):
        """Start decoding an encoded mask; `key` identifies what it belongs to (e.g. the map id)."""
        with self._lock:
            self._generation += 1
            generation = self._generation
            self.pending_key = key
        return (self.executor or decode_executor).submit(self._decode_and_swap, generation, encoded, key)

    def _decode_and_swap(self, generation, encoded, key):
        try:
            image = self.codec.decode(encoded)
        except DecodeError as e:
            logging.warning(f"RenderCache: decode failed for {key}, keeping previous mask: {e}")
            with self._lock:
                if generation == self._generation: self.pending_key = None
            return False
        with self._lock:
            if generation != self._generation:
                logging.debug(f"RenderCache: dropping superseded decode for {key}")
                return False
            self.displayed = image
            self.displayed_key = key
            self.pending_key = None
        logging.debug(f"RenderCache: swapped in mask for {key} ({image.width}x{image.height})")
        if self.on_swap is not None:
            try: self.on_swap(key, image)
            except Exception as e: logging.error(f"RenderCache: redraw callback failed: {e}", exc_info=True)
        return True

    def clear(self):
        """Drop the displayed image, e.g. when the map it belongs to is deleted."""
        with self._lock:
            self._generation += 1
            self.displayed = None
            self.displayed_key = None
            self.pending_key = None

    def image_for(self, key):
        with self._lock:
            return self.displayed if self.displayed_key == key else None
