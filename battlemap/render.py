# battlemap/render.py
# Frame compositing: background + fog mask under a camera, as JPEG bytes

import math
import logging
from io import BytesIO

from PIL import Image


def _fade(fog, opacity):
    if opacity >= 1.0: return fog
    alpha = fog.getchannel('A').point(lambda a: int(a * opacity))
    fog = fog.copy(); fog.putalpha(alpha)
    return fog


def compose_frame(background, mask_image, zoom, pan, viewport, fog_opacity=1.0):
    """Draw what a client with this camera sees. Areas outside the map stay black."""
    vw, vh = max(1, int(viewport[0])), max(1, int(viewport[1]))
    frame = Image.new('RGB', (vw, vh), (0, 0, 0))
    if background is None: return frame
    img_w, img_h = background.size
    pan_x, pan_y = pan
    # Visible part of the image, in image coordinates.
    x0 = max(0.0, -pan_x / zoom); y0 = max(0.0, -pan_y / zoom)
    x1 = min(float(img_w), (vw - pan_x) / zoom); y1 = min(float(img_h), (vh - pan_y) / zoom)
    if x1 <= x0 or y1 <= y0: return frame
    box = (int(math.floor(x0)), int(math.floor(y0)), int(math.ceil(x1)), int(math.ceil(y1)))
    region = background.crop(box).convert('RGBA')
    if mask_image is not None:
        fog = mask_image.convert('RGBA')
        if fog.size != background.size:
            # Downsampled masks still cover the full background.
            fog = fog.resize(background.size, Image.BILINEAR)
        region = Image.alpha_composite(region, _fade(fog.crop(box), fog_opacity))
    dest_w = max(1, int(round((box[2] - box[0]) * zoom))); dest_h = max(1, int(round((box[3] - box[1]) * zoom)))
    region = region.resize((dest_w, dest_h), Image.BILINEAR)
    frame.paste(region.convert('RGB'), (int(round(box[0] * zoom + pan_x)), int(round(box[1] * zoom + pan_y))))
    return frame


def frame_jpeg_bytes(frame, quality=85):
    buf = BytesIO()
    frame.save(buf, format='JPEG', quality=quality)
    image_bytes = buf.getvalue()
    logging.debug(f"frame_jpeg_bytes: Generated {len(image_bytes)} bytes JPEG in memory.")
    return image_bytes
