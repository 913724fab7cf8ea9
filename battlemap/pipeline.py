# battlemap/pipeline.py
# Map upload pipeline: Uploading -> Scaling -> Rotating -> Persisting, with typed stage failures

import os
import time
import logging
from uuid import uuid4

from PIL import Image, UnidentifiedImageError
from werkzeug.utils import secure_filename

from battlemap import config
from battlemap.errors import BattlemapError, PersistingError, RotatingError, ScalingError, StageError, UploadingError

PIL_FORMATS = {'png': 'PNG', 'jpg': 'JPEG', 'jpeg': 'JPEG', 'webp': 'WEBP'}
# Clockwise rotation, as the map is shown on screen.
ROTATIONS = {90: Image.Transpose.ROTATE_270, 180: Image.Transpose.ROTATE_180, 270: Image.Transpose.ROTATE_90}


def allowed_image_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in config.ALLOWED_IMAGE_EXTENSIONS


def scaled_size(size, option):
    """Largest size with the same aspect ratio that fits the target box."""
    if option not in config.SCALING_TARGETS: raise ScalingError(f"Unknown scaling option {option!r}")
    target_w, target_h = config.SCALING_TARGETS[option]
    factor = min(target_w / size[0], target_h / size[1])
    return (max(1, int(round(size[0] * factor))), max(1, int(round(size[1] * factor))))


class UploadPipeline:
    """Turns an uploaded file into a new map. A failed stage removes every file the run wrote."""

    def __init__(self, session, uploads_folder):
        self.session = session
        self.uploads_folder = uploads_folder

    def run(self, file, name=None, scaling=None, rotation=0, origin_sid=None):
        written = []
        try:
            path, filename = self._upload(file, written)
            image, changed = self._open(path), False
            if scaling:
                image = self._scale(image, scaling); changed = True
            rotation = self._rotation(rotation)
            if rotation:
                image = self._rotate(image, rotation); changed = True
            if changed: self._write(image, path, filename, RotatingError if rotation else ScalingError)
            record = self._persist(name or os.path.splitext(file.filename)[0], filename, image.size, origin_sid)
        except StageError as e:
            logging.error(f"Upload pipeline failed at {e.stage}: {e}")
            self._cleanup(written)
            raise
        logging.info(f"Upload pipeline created map {record['id']} from {filename} ({image.size[0]}x{image.size[1]})")
        return record

    def _upload(self, file, written):
        if file is None or not file.filename: raise UploadingError("No file selected")
        if not allowed_image_file(file.filename):
            raise UploadingError(f"Type not allowed. Allowed: {', '.join(sorted(config.ALLOWED_IMAGE_EXTENSIONS))}")
        filename = f"{int(time.time()*1000)}_{uuid4().hex[:5]}_{secure_filename(file.filename)}"
        path = os.path.join(self.uploads_folder, filename)
        try:
            file.save(path)
        except OSError as e:
            raise UploadingError(f"Could not store {file.filename}", cause=e) from e
        written.append(path)
        logging.info(f"Upload stored: {path}")
        return path, filename

    @staticmethod
    def _open(path):
        try:
            with Image.open(path) as img:
                img.load()
                return img.copy()
        except (UnidentifiedImageError, OSError) as e:
            raise UploadingError("File is not a readable image", cause=e) from e

    @staticmethod
    def _scale(image, option):
        size = scaled_size(image.size, option)
        try:
            logging.debug(f"Scaling {image.size} -> {size} ({option})")
            return image.resize(size, Image.LANCZOS)
        except (ValueError, OSError) as e:
            raise ScalingError(f"Could not scale to {option}", cause=e) from e

    @staticmethod
    def _rotation(value):
        """Form values arrive as strings; "0" means no rotation."""
        try: rotation = int(value or 0)
        except (TypeError, ValueError) as e: raise RotatingError(f"Bad rotation {value!r}", cause=e) from e
        if rotation not in config.ALLOWED_ROTATIONS: raise RotatingError(f"Rotation must be one of {config.ALLOWED_ROTATIONS}")
        return rotation

    @staticmethod
    def _rotate(image, rotation):
        try:
            logging.debug(f"Rotating {rotation} degrees clockwise")
            return image.transpose(ROTATIONS[rotation])
        except (ValueError, OSError) as e:
            raise RotatingError(f"Could not rotate by {rotation}", cause=e) from e

    @staticmethod
    def _write(image, path, filename, error_class):
        fmt = PIL_FORMATS[filename.rsplit('.', 1)[1].lower()]
        try:
            if fmt == 'JPEG' and image.mode not in ('RGB', 'L'): image = image.convert('RGB')
            image.save(path, format=fmt)
        except (ValueError, OSError) as e:
            raise error_class("Could not write processed image", cause=e) from e

    def _persist(self, name, filename, size, origin_sid):
        url = f"/uploads/{filename}"
        try:
            return self.session.create_map(name, background_image=url, width=size[0], height=size[1], origin_sid=origin_sid)
        except PersistingError:
            raise
        except BattlemapError as e:
            raise PersistingError(str(e), cause=e) from e

    @staticmethod
    def _cleanup(written):
        for path in written:
            try:
                os.remove(path); logging.info(f"Removed partial upload {path}")
            except OSError as e:
                logging.warning(f"Could not remove partial upload {path}: {e}")
