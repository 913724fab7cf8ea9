import base64

import pytest
from PIL import Image

from conftest import ImmediateExecutor
from battlemap.codec import LADDER, MIME_JPEG, MIME_PNG, MaskCodec
from battlemap.errors import DecodeError, OversizeError
from battlemap.mask import MaskEditor, MaskStore


def noisy_mask(size=(256, 256)):
    """A mask with noisy alpha: expensive as PNG, cheap as (black) JPEG."""
    mask = Image.new('RGBA', size, (0, 0, 0, 0))
    mask.putalpha(Image.effect_noise(size, 100))
    return mask


def noisy_colour(size=(256, 256)):
    return Image.merge('RGBA', [Image.effect_noise(size, 80) for _ in range(4)])


def test_png_round_trip_is_pixel_identical():
    store = MaskStore(120, 80, 'revealed')
    MaskEditor(store).paint_stroke([(10, 10), (60, 40), (110, 70)], 'hide', 12)
    encoded = MaskCodec().encode(store.image)
    assert encoded.label == 'png'
    assert encoded.mime == MIME_PNG and encoded.lossless
    assert encoded.data_uri.startswith('data:image/png;base64,')
    decoded = MaskCodec.decode(encoded.data_uri)
    assert decoded.convert('RGBA').tobytes() == store.image.tobytes()


def test_png_over_soft_cap_falls_back_to_jpeg_07():
    mask = noisy_mask()
    png_uri, _ = MaskCodec.encode_step(mask, MIME_PNG)
    codec = MaskCodec(soft_cap=len(png_uri) - 1, hard_cap=len(png_uri) * 2)
    encoded = codec.encode(mask)
    assert encoded.label == 'jpeg-0.7'
    assert encoded.mime == MIME_JPEG and encoded.quality == 0.7
    assert encoded.byte_length <= codec.soft_cap
    assert [label for label, _ in encoded.attempts] == ['png', 'jpeg-0.7']
    assert (encoded.encoded_width, encoded.encoded_height) == mask.size


def test_ladder_sizes_never_grow():
    image = noisy_colour()
    sizes = [len(MaskCodec.encode_step(image, mime, quality, scale)[0]) for _label, mime, quality, scale in LADDER]
    png, jpeg_07, jpeg_05, half = sizes
    assert png > jpeg_07
    assert jpeg_07 >= jpeg_05
    assert jpeg_05 > half


def test_half_resolution_step_downsamples():
    _uri, size = MaskCodec.encode_step(Image.new('RGBA', (301, 200)), MIME_JPEG, 0.5, 0.5)
    assert size == (150, 100)


def test_last_step_used_when_nothing_fits_soft_cap():
    mask = noisy_mask()
    codec = MaskCodec(soft_cap=10, hard_cap=10 * 1024 * 1024)
    encoded = codec.encode(mask)
    assert encoded.label == 'jpeg-0.5-half'
    assert len(encoded.attempts) == len(LADDER)
    assert encoded.meta()['encodedWidth'] == mask.width // 2
    assert encoded.meta()['width'] == mask.width


def test_oversize_after_whole_ladder():
    codec = MaskCodec(soft_cap=10, hard_cap=20)
    with pytest.raises(OversizeError) as info:
        codec.encode(noisy_mask((64, 64)))
    assert info.value.byte_length > 20


def test_meta_describes_encoding():
    encoded = MaskCodec().encode(MaskStore(40, 30, 'hidden').image)
    meta = encoded.meta()
    assert meta['mime'] == MIME_PNG
    assert meta['byteLength'] == len(encoded.data_uri)
    assert (meta['width'], meta['height']) == (40, 30)


@pytest.mark.parametrize('bad', [
    None,
    'not a data uri',
    'data:image/png;base64,***',
    'data:image/png;base64,' + base64.b64encode(b'definitely not a png').decode('ascii'),
])
def test_decode_rejects_garbage(bad):
    with pytest.raises(DecodeError):
        MaskCodec.decode(bad)


def test_decode_async_returns_future():
    encoded = MaskCodec().encode(MaskStore(20, 20, 'hidden').image)
    future = MaskCodec().decode_async(encoded.data_uri, executor=ImmediateExecutor())
    assert future.result().size == (20, 20)

    failed = MaskCodec().decode_async('garbage', executor=ImmediateExecutor())
    with pytest.raises(DecodeError):
        failed.result()
