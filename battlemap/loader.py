# battlemap/loader.py
# Background image loader: one cached future per URL, decoded off the handler thread

import os
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from PIL import Image, UnidentifiedImageError
from werkzeug.utils import secure_filename

from battlemap.codec import MaskCodec
from battlemap.errors import DecodeError

UPLOADS_PREFIX = '/uploads/'


class ImageLoader:
    """Resolves background image URLs to decoded Pillow images.

    Each URL maps to a single future shared by every caller. A failed load is
    evicted so the next request tries again.
    """

    def __init__(self, uploads_folder, executor=None):
        self.uploads_folder = uploads_folder
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix='image-load')
        self._futures = {}
        self._lock = threading.Lock()

    def resolve_path(self, url):
        if not isinstance(url, str) or not url.startswith(UPLOADS_PREFIX): return None
        filename = secure_filename(url[len(UPLOADS_PREFIX):])
        if not filename: return None
        path = os.path.join(self.uploads_folder, filename)
        if not os.path.abspath(path).startswith(os.path.abspath(self.uploads_folder)): return None
        return path

    def _read(self, url):
        if isinstance(url, str) and url.startswith('data:'):
            return MaskCodec.decode(url)
        path = self.resolve_path(url)
        if path is None: raise DecodeError(f"Unsupported image URL: {url!r}")
        try:
            with Image.open(path) as img:
                img.load()
                return img.copy()
        except FileNotFoundError as e:
            raise DecodeError(f"Image not found: {url}") from e
        except (UnidentifiedImageError, OSError) as e:
            raise DecodeError(f"Could not decode image {url}: {e}") from e

    def load(self, url):
        with self._lock:
            future = self._futures.get(url)
            if future is not None: return future
            logging.debug(f"ImageLoader: loading {url[:80] if isinstance(url, str) else url}")
            future = self._executor.submit(self._read, url)
            self._futures[url] = future
        future.add_done_callback(lambda f, u=url: self._evict_failed(u, f))
        return future

    def _evict_failed(self, url, future):
        if future.cancelled() or future.exception() is not None:
            logging.warning(f"ImageLoader: failed to load {url[:80] if isinstance(url, str) else url}: {future.exception() if not future.cancelled() else 'cancelled'}")
            with self._lock:
                if self._futures.get(url) is future: del self._futures[url]

    def get(self, url, timeout=None):
        """Block until the image is available. Raises DecodeError."""
        return self.load(url).result(timeout=timeout)

    def natural_size(self, url, timeout=None):
        return self.get(url, timeout=timeout).size

    def invalidate(self, url):
        with self._lock:
            self._futures.pop(url, None)
