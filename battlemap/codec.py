# battlemap/codec.py
# Mask serialization: data-URI encoding with a size-bounded compression ladder

import base64
import binascii
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from io import BytesIO

from PIL import Image, UnidentifiedImageError

from battlemap import config
from battlemap.errors import DecodeError, OversizeError

MIME_PNG = 'image/png'
MIME_JPEG = 'image/jpeg'

DATA_URI_REGEX = re.compile(r'^data:(image/[a-zA-Z0-9.+-]+);base64,(.*)$', re.DOTALL)

# (label, mime, quality, scale) tried in order until one fits under the soft cap.
LADDER = (
    ('png', MIME_PNG, None, 1.0),
    ('jpeg-0.7', MIME_JPEG, 0.7, 1.0),
    ('jpeg-0.5', MIME_JPEG, 0.5, 1.0),
    ('jpeg-0.5-half', MIME_JPEG, 0.5, 0.5),
)


class EncodedMask:
    """A serialized mask plus the metadata persisted next to it."""

    def __init__(self, data_uri, mime, quality, label, width, height, encoded_width, encoded_height, attempts=None):
        self.data_uri = data_uri
        self.mime = mime
        self.quality = quality
        self.label = label
        self.width = width
        self.height = height
        self.encoded_width = encoded_width
        self.encoded_height = encoded_height
        self.attempts = attempts or []

    @property
    def byte_length(self):
        return len(self.data_uri)

    @property
    def lossless(self):
        return self.mime == MIME_PNG

    def meta(self):
        return {
            'mime': self.mime,
            'quality': self.quality,
            'label': self.label,
            'byteLength': self.byte_length,
            'width': self.width,
            'height': self.height,
            'encodedWidth': self.encoded_width,
            'encodedHeight': self.encoded_height,
        }


def to_data_uri(raw, mime):
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


def split_data_uri(data_uri):
    if not isinstance(data_uri, str): raise DecodeError("Encoded mask is not a string")
    match = DATA_URI_REGEX.match(data_uri)
    if not match: raise DecodeError("Not a base64 image data URI")
    try:
        raw = base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Bad base64 payload: {e}") from e
    return match.group(1), raw


class MaskCodec:
    """Encodes a mask image under a soft/hard size cap and decodes received ones."""

    def __init__(self, soft_cap=config.MASK_SOFT_CAP, hard_cap=config.MASK_HARD_CAP):
        self.soft_cap = soft_cap
        self.hard_cap = hard_cap

    @staticmethod
    def encode_step(image, mime, quality=None, scale=1.0):
        """Encode one ladder step; returns (data URI, encoded pixel size)."""
        if scale != 1.0:
            size = (max(1, int(image.width * scale)), max(1, int(image.height * scale)))
            image = image.resize(size, Image.BILINEAR)
        buf = BytesIO()
        if mime == MIME_PNG:
            image.convert('RGBA').save(buf, format='PNG')
        else:
            # JPEG has no alpha: dropping it leaves the black fog colour everywhere,
            # the same result a browser canvas gives for a transparent JPEG export.
            image.convert('RGB').save(buf, format='JPEG', quality=int(round(quality * 100)))
        return to_data_uri(buf.getvalue(), mime), image.size

    def encode(self, image):
        """Walk the ladder; raise OversizeError if the last step is still over the hard cap."""
        attempts = []
        data_uri = None; encoded_size = image.size; step = None
        for step in LADDER:
            label, mime, quality, scale = step
            data_uri, encoded_size = self.encode_step(image, mime, quality, scale)
            attempts.append((label, len(data_uri)))
            logging.debug(f"Mask encode {label}: {len(data_uri)} bytes")
            if len(data_uri) <= self.soft_cap: break
            logging.warning(f"Mask encode {label} is {len(data_uri)} bytes, over soft cap {self.soft_cap}")
        if len(data_uri) > self.hard_cap:
            logging.error(f"Mask still {len(data_uri)} bytes after all compression attempts (hard cap {self.hard_cap}); not saving")
            raise OversizeError(f"Mask is {len(data_uri)} bytes after compression", byte_length=len(data_uri))
        label, mime, quality, _scale = step
        logging.info(f"Mask encoded using {label}, final size {len(data_uri)} bytes")
        return EncodedMask(data_uri, mime, quality, label, image.width, image.height, encoded_size[0], encoded_size[1], attempts)

    @staticmethod
    def decode(data_uri):
        _mime, raw = split_data_uri(data_uri)
        try:
            image = Image.open(BytesIO(raw))
            image.load()
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise DecodeError(f"Could not decode mask image: {e}") from e
        return image

    def decode_async(self, data_uri, executor=None):
        """Decode on a worker; the returned future raises DecodeError on failure."""
        return (executor or decode_executor).submit(self.decode, data_uri)


decode_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='mask-decode')
